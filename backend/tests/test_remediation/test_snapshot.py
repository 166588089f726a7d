"""配置快照存储测试。"""
import hashlib

import pytest

from netpilot.core.exceptions import NotFoundError
from netpilot.remediation.command_executor import DeviceCommandError
from netpilot.remediation.snapshot import FileSnapshotStore, SnapshotProvider

EXPORT = "# mar/01/2026 12:00:00 by RouterOS 7.14\n/interface bridge\nadd name=bridge\n"


@pytest.fixture
def store(tmp_path, device, audit):
    device.responses = {"/export": EXPORT}
    return FileSnapshotStore(tmp_path / "snapshots", device, audit=audit)


class TestFileSnapshotStore:
    @pytest.mark.asyncio
    async def test_create_writes_content_and_index(self, store, audit):
        snapshot_id = await store.create_snapshot("pre-remediation")

        assert await store.get_snapshot_content(snapshot_id) == EXPORT
        [snapshot] = await store.list_snapshots()
        assert snapshot.id == snapshot_id
        assert snapshot.trigger == "pre-remediation"
        assert snapshot.checksum == hashlib.sha256(EXPORT.encode()).hexdigest()

        entries = await audit.query(action="snapshot_create")
        assert entries[0].details.metadata["snapshot_id"] == snapshot_id

    @pytest.mark.asyncio
    async def test_newest_first_and_bounded(self, tmp_path, device):
        device.responses = {"/export": EXPORT}
        store = FileSnapshotStore(tmp_path / "snapshots", device, max_snapshots=2)
        ids = [await store.create_snapshot(f"t{i}") for i in range(3)]

        assert [s.id for s in await store.list_snapshots()] == [ids[2], ids[1]]
        with pytest.raises(NotFoundError):
            await store.get_snapshot_content(ids[0])

    @pytest.mark.asyncio
    async def test_device_error_propagates(self, store, device):
        device.fail_on = {"/export"}
        with pytest.raises(DeviceCommandError):
            await store.create_snapshot("pre-remediation")
        assert await store.list_snapshots() == []

    def test_satisfies_provider_protocol(self, store):
        assert isinstance(store, SnapshotProvider)
