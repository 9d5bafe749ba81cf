import asyncio

from fieldsync.models.offline import RecordCategory, SyncStatus
from fieldsync.services.connectivity import ConnectivityMonitor
from fieldsync.services.coordinator import SyncCoordinator


def _coordinator(store, api, notifier, online=False, auto_sync=True):
    connectivity = ConnectivityMonitor(initial_online=online)
    return SyncCoordinator(
        store, api, connectivity, notifier, auto_sync=auto_sync, probe_interval=0
    )


class TestConnectivityMonitor:
    def test_emits_only_on_transitions(self):
        monitor = ConnectivityMonitor(initial_online=True)
        seen = []
        unsubscribe = monitor.subscribe(seen.append)

        assert monitor.set_online(True) is False
        assert monitor.set_online(False) is True
        assert monitor.set_online(False) is False
        unsubscribe()
        monitor.set_online(True)

        assert seen == [False]

    def test_probe_uses_health_endpoint(self, api):
        async def unhealthy():
            return False

        api.health = unhealthy
        monitor = ConnectivityMonitor(initial_online=True, api=api)
        assert asyncio.run(monitor.probe()) is False
        assert monitor.is_online is False


class TestLifecycle:
    def test_reconnect_triggers_sync(self, store, api, notifier):
        coordinator = _coordinator(store, api, notifier)

        async def scenario():
            await coordinator.startup()
            for n in range(3):
                coordinator.capture.save_assessment({"projectId": "p1", "observations": str(n)})
            coordinator.connectivity.set_online(True)
            await coordinator.wait_idle()
            await coordinator.shutdown()

        asyncio.run(scenario())

        assert len(api.calls_to("sync_assessment")) == 3
        assert store.list_category(RecordCategory.ASSESSMENTS) == []
        titles = [n.title for n in notifier.recent()]
        assert "Assessment saved offline" in titles
        assert "Back online" in titles
        assert titles[-1] == "Sync complete"

    def test_reconnect_retries_failed_records(self, store, api, notifier):
        coordinator = _coordinator(store, api, notifier, online=True, auto_sync=True)
        api.fail_next("sync_assessment")

        async def scenario():
            await coordinator.startup()
            local_id = coordinator.capture.save_assessment({"projectId": "p1"})
            await coordinator.engine.start()
            assert store.get(local_id).status == SyncStatus.FAILED.value

            coordinator.connectivity.set_online(False)
            coordinator.connectivity.set_online(True)
            await coordinator.wait_idle()
            await coordinator.shutdown()
            return local_id

        local_id = asyncio.run(scenario())
        assert store.get(local_id) is None

    def test_startup_recovers_interrupted_uploads(self, store, api, notifier):
        local_id = store.save(RecordCategory.PHOTOS, {}, parent_id="12", blob=b"jpeg")
        store.update_status(local_id, SyncStatus.UPLOADING, progress=40)
        coordinator = _coordinator(store, api, notifier, auto_sync=False)

        asyncio.run(coordinator.startup())

        assert store.get(local_id).status == SyncStatus.PENDING.value
        assert api.calls == []

    def test_shutdown_unsubscribes(self, store, api, notifier):
        coordinator = _coordinator(store, api, notifier)

        async def scenario():
            await coordinator.startup()
            await coordinator.shutdown()
            coordinator.connectivity.set_online(True)

        asyncio.run(scenario())
        assert notifier.recent() == []

    def test_status_snapshot(self, store, api, notifier):
        coordinator = _coordinator(store, api, notifier, auto_sync=False)
        coordinator.capture.save_deficiency("offline_assessments_x", {"description": "Cracked slab"})

        status = coordinator.status()

        assert status["state"] == "idle"
        assert status["is_online"] is False
        assert status["last_sync"] is None
        assert status["stats"]["pending"] == 1
