from typing import Awaitable, Callable

from valkey_reconciler.abc import AbcNodeClient
from valkey_reconciler.structs import Address


NodeConnector = Callable[[Address], Awaitable[AbcNodeClient]]
