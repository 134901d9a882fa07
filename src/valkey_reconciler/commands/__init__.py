from typing import Dict, Type

from .base import BaseCommand
from .init import InitCommand
from .scale_down import ScaleDownCommand
from .scale_up import ScaleUpCommand


__all__ = (
    "BaseCommand",
    "InitCommand",
    "ScaleUpCommand",
    "ScaleDownCommand",
    "COMMANDS",
)


COMMANDS: Dict[str, Type[BaseCommand]] = {
    cmd.name: cmd for cmd in (InitCommand, ScaleUpCommand, ScaleDownCommand)
}
