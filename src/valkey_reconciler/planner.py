import dataclasses
from typing import Dict, List, Optional

from valkey_reconciler.errors import MasterCountMismatchError, NodeIndexError, TopologyError
from valkey_reconciler.log import logger
from valkey_reconciler.slots import TOTAL_SLOTS, SlotBitset, SlotRangeTracker
from valkey_reconciler.structs import MigrationRoute
from valkey_reconciler.topology import ClusterTopology


__all__ = (
    "UNASSIGNED",
    "SlotsReconcilePlan",
    "calculate_slots_to_reconcile",
)


UNASSIGNED = 255


@dataclasses.dataclass
class SlotsReconcilePlan:
    # indexed by desired master ordinal, None where nothing to add
    add_slots: List[Optional[SlotRangeTracker]]
    migrations: Dict[MigrationRoute, SlotRangeTracker]

    def is_empty(self) -> bool:
        return not self.migrations and all(t is None for t in self.add_slots)


def _slot_owners(topology: ClusterTopology) -> bytearray:
    owners = bytearray([UNASSIGNED]) * TOTAL_SLOTS
    for master in topology.masters:
        if master.addr is None:
            raise NodeIndexError(master.node_id)
        index = master.addr.index()
        if index >= UNASSIGNED:
            raise TopologyError(f"master {master.node_id} ordinal {index} is out of range")
        if not master.slot_ranges:
            continue
        for slot_range in master.slot_ranges:
            owners[slot_range.start : slot_range.end + 1] = bytes([index]) * slot_range.size()
    return owners


def _in_flight_slots(current: ClusterTopology, current_owners: bytearray) -> SlotBitset:
    """Slots with an outstanding migration recorded on the current topology.

    A recorded slot counts only while its source still owns it, otherwise the
    record is stale and ownership decides.
    """

    in_flight = SlotBitset()
    for route, tracker in current.migrations.items():
        for slot in tracker.slots():
            if current_owners[slot] != route.source:
                logger.warning(
                    "Ignore stale migration of slot %d on route %s: slot is owned by %s",
                    slot,
                    route,
                    "nobody" if current_owners[slot] == UNASSIGNED else current_owners[slot],
                )
                continue
            in_flight.set(slot)
    return in_flight


def calculate_slots_to_reconcile(
    current: ClusterTopology,
    desired: ClusterTopology,
) -> SlotsReconcilePlan:
    """Diff slot ownership of two topologies with the same number of masters.

    Unowned slots go to ``add_slots`` of their desired master; slots owned by
    another master become migration routes. Slots already migrating on the
    current topology are not scheduled again.
    """

    if len(current.masters) != len(desired.masters):
        raise MasterCountMismatchError(len(current.masters), len(desired.masters))

    current_owners = _slot_owners(current)
    desired_owners = _slot_owners(desired)
    in_flight = _in_flight_slots(current, current_owners)

    add_slots: List[Optional[SlotRangeTracker]] = [None] * len(desired.masters)
    migrations: Dict[MigrationRoute, SlotRangeTracker] = {}

    for slot in range(TOTAL_SLOTS):
        current_owner = current_owners[slot]
        desired_owner = desired_owners[slot]
        if desired_owner == UNASSIGNED or current_owner == desired_owner:
            continue

        if current_owner == UNASSIGNED:
            if desired_owner >= len(add_slots):
                raise TopologyError(
                    f"desired master ordinal {desired_owner} exceeds "
                    f"master count {len(add_slots)}"
                )
            tracker = add_slots[desired_owner]
            if tracker is None:
                tracker = add_slots[desired_owner] = SlotRangeTracker()
            tracker.add_slot(slot)
        elif not in_flight.test(slot):
            route = MigrationRoute(current_owner, desired_owner)
            migrations.setdefault(route, SlotRangeTracker()).add_slot(slot)

    return SlotsReconcilePlan(add_slots=add_slots, migrations=migrations)
