import structlog

from ..config import Config
from ..errors import RollbackNotAllowed, StoreWriteError
from ..models import COUNTER_KEY, HISTORY_KEY, HistoryEntry, HistoryType, extract_number

log = structlog.get_logger()


class AdminService:
    """
    Administrative writes on the tally, each recorded in the history log.

    Counter writes go through the bridge (holder first, then the store), so
    the admin's own process and every other client see the same path a
    display edit would take. History entries are appended afterwards and
    are not tied to the counter by any constraint.
    """

    def __init__(self, config: Config, store, bridge, special):
        self.config = config
        self.store = store
        self.bridge = bridge
        self.holder = bridge.holder
        self.special_channel = special

    async def current_value(self):
        record = await self.store.get(COUNTER_KEY)
        value = extract_number(record)
        return self.holder.value if value is None else value

    async def record_action(self, action, value, previous_value=None, **extra):
        entry = HistoryEntry(type=HistoryType(action), value=value, previous_value=previous_value, **extra)
        try:
            await self.store.push(HISTORY_KEY, entry.to_record())
        except Exception as e:
            raise StoreWriteError(f"history write failed: {e}") from e
        log.info(
            "history_recorded",
            entry_id=entry.id,
            type=entry.type.value,
            value=value,
            previous_value=previous_value,
        )
        return entry

    async def set_value(self, value):
        previous = await self.current_value()
        await self.bridge.commit(value)
        return await self.record_action(HistoryType.SET, value, previous)

    async def add(self, amount):
        previous = await self.current_value()
        value = previous + amount
        await self.bridge.commit(value)
        return await self.record_action(HistoryType.ADD, value, previous, added_amount=amount)

    async def special(self, message, amount):
        """Add `amount` to the tally and put up the announcement."""
        previous = await self.current_value()
        value = previous + amount
        await self.bridge.commit(value)
        try:
            event = await self.special_channel.announce(message, amount)
        except Exception as e:
            # the amount is on the counter already, keep it undoable
            await self.record_action(
                HistoryType.SPECIAL, value, previous, added_amount=amount, message=message
            )
            raise StoreWriteError(f"announcement write failed: {e}") from e
        entry = await self.record_action(
            HistoryType.SPECIAL, value, previous, added_amount=amount, message=message
        )
        return entry, event

    async def history(self, limit=None):
        limit = self.config.history_window if limit is None else limit
        records = await self.store.children(HISTORY_KEY, limit=limit)
        return [HistoryEntry.model_validate(r) for r in records]

    async def rollback(self, entry_id, force=False):
        """
        Restore the value the counter had before `entry_id` and drop the
        entry. Store-side this is a single transaction; the local cache is
        updated afterwards.
        """
        record = await self.store.child(HISTORY_KEY, entry_id)
        if record is not None and not HistoryEntry.model_validate(record).can_rollback:
            raise RollbackNotAllowed(
                "reset entries and entries without a previous value cannot be rolled back",
                details={"entry_id": entry_id},
            )
        merged = await self.store.restore(entry_id, force=force, writer_id=self.config.node_id)
        value = extract_number(merged)
        self.holder.update_local(value)
        log.info("counter_rolled_back", entry_id=entry_id, value=value)
        return value

    async def reset(self):
        """Counter to 0 and the history wiped. Nothing is recorded for it."""
        merged = await self.store.reset(writer_id=self.config.node_id)
        self.holder.update_local(extract_number(merged))
        log.warning("counter_reset")
        return 0
