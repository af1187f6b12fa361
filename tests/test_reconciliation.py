"""
Tests for the Reconciliation Store
"""

import asyncio

from hosting_bridge.records import ProvisioningRecord, ProvisioningState
from hosting_bridge.reconciliation import MemoryBackend

from conftest import make_session


def ready(session_id="cs_test_123", instance_id=7):
    return ProvisioningRecord(
        session_id=session_id,
        state=ProvisioningState.READY,
        instance_id=instance_id,
        address="play.example.com:25565",
        account_id=1,
        completed_at="2026-01-01T00:00:00+00:00",
    )


def reload(billing, store, session_id="cs_test_123"):
    async def go():
        session = await billing.retrieve_session(session_id)
        return await store.load(session)
    return asyncio.run(go())


class TestDurablePath:

    def test_save_writes_session_metadata(self, billing, store):
        billing.add_session(make_session())

        saved = asyncio.run(store.save(ready()))

        assert saved.persisted_to_fallback is False
        assert billing.sessions["cs_test_123"].metadata["serverId"] == "7"
        assert reload(billing, store).instance_id == 7

    def test_nothing_recorded(self, billing, store):
        billing.add_session(make_session())
        assert reload(billing, store) is None


class TestFallback:

    def test_durable_failure_keeps_record_in_memory(self, billing, store):
        billing.add_session(make_session())
        billing.fail_merge = True

        saved = asyncio.run(store.save(ready()))

        assert saved.persisted_to_fallback is True
        assert store.degraded_sessions() == ["cs_test_123"]
        assert reload(billing, store).instance_id == 7

    def test_unexpected_durable_error_keeps_record_in_memory(self, billing, store):
        billing.add_session(make_session())

        async def broken(session_id, updates):
            raise KeyError("metadata")

        billing.merge_metadata = broken

        saved = asyncio.run(store.save(ready()))

        assert saved.persisted_to_fallback is True
        assert store.degraded_sessions() == ["cs_test_123"]
        assert asyncio.run(store.fallback.load(make_session())).instance_id == 7

    def test_recovery_clears_degradation(self, billing, store):
        billing.add_session(make_session())
        billing.fail_merge = True
        asyncio.run(store.save(ready()))

        billing.fail_merge = False
        asyncio.run(store.save(ready()))

        assert store.degraded_count == 0
        assert asyncio.run(store.fallback.load(make_session())) is None

    def test_durable_ready_beats_volatile(self, billing, store):
        billing.add_session(make_session())
        asyncio.run(store.save(ready(instance_id=7)))
        asyncio.run(store.fallback.save(ready(instance_id=99)))

        assert reload(billing, store).instance_id == 7

    def test_volatile_beats_durable_failure(self, billing, store):
        billing.add_session(make_session())
        asyncio.run(store.save(ProvisioningRecord.failed("cs_test_123", "NoCapacity", "full")))
        billing.fail_merge = True
        asyncio.run(store.save(ready(instance_id=8)))

        record = reload(billing, store)
        assert record.is_ready
        assert record.instance_id == 8

    def test_record_failure_never_raises(self, billing, store):
        billing.add_session(make_session())
        billing.fail_merge = True

        asyncio.run(store.record_failure(
            ProvisioningRecord.failed("cs_test_123", "CapacityExceeded", "full")
        ))

        assert store.degraded_count == 1


class TestMemoryBackend:

    def test_discard(self):
        backend = MemoryBackend()
        session = make_session()

        async def go():
            await backend.save(ready())
            await backend.discard(session.id)
            return await backend.load(session)

        assert asyncio.run(go()) is None
