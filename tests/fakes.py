"""Test doubles for the remote API and the retry timer."""


class FakeTransport:
    """In-memory remote; scripted failures are popped per call."""

    def __init__(self):
        self.calls = []
        self.rows = {}
        self.failures = []
        self.id_map = {}
        self.clock = 0

    def _stamp(self):
        self.clock += 1
        return f"2026-02-01T00:00:{self.clock:02d}.000000Z"

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    async def create(self, record_type, payload):
        self.calls.append(("create", record_type, dict(payload)))
        self._maybe_fail()
        rid = self.id_map.get(payload["id"], payload["id"])
        row = {**payload, "id": rid, "updated_at": self._stamp()}
        self.rows[(record_type, rid)] = row
        return dict(row)

    async def update(self, record_type, record_id, payload, base_updated_at):
        self.calls.append(("update", record_type, record_id, dict(payload)))
        self._maybe_fail()
        row = {**self.rows.get((record_type, record_id), {"id": record_id}), **payload}
        row["updated_at"] = self._stamp()
        self.rows[(record_type, record_id)] = row
        return dict(row)

    async def delete(self, record_type, record_id):
        self.calls.append(("delete", record_type, record_id))
        self._maybe_fail()
        self.rows.pop((record_type, record_id), None)

    async def fetch_all(self, record_type):
        return [dict(row) for (rt, _), row in self.rows.items() if rt == record_type]


class FakeScheduler:
    def __init__(self):
        self.scheduled = []

    def call_later(self, delay, callback):
        handle = FakeHandle(delay, callback)
        self.scheduled.append(handle)
        return handle


class FakeHandle:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


