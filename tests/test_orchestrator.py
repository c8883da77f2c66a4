import threading
import time
from unittest.mock import MagicMock

import pytest

from sitekb.errors import (
    CrawlError,
    InvalidStateError,
    SiteNotFoundError,
    VectorStoreError,
)
from sitekb.locks import RedisSiteLocks, SiteLockRegistry


def _vector_ids(services, site_id="site-1"):
    client = services.index.client
    return set(client._data.get(site_id, {}).keys())


def test_initialize_runs_pipeline_to_ready(kb_services):
    kb = kb_services.orchestrator
    status = kb.initialize("site-1")
    assert status.status == "ready"
    assert status.total_documents == 3
    assert status.error_message is None
    assert status.last_refresh is not None

    assert kb_services.store.is_rag_enabled("site-1")
    docs = kb.get_documents("site-1")
    assert len(docs) == 3
    assert all(d.status == "embedded" and d.total_chunks == 1 for d in docs)

    ids = _vector_ids(kb_services)
    assert len(ids) == 3
    assert all(i.startswith("site-1-") for i in ids)

    profile = kb_services.store.get_profile("site-1")
    assert profile is not None
    assert profile.business_context.company_name in ("Acme Plumbing", "acme.test")
    assert profile.contact_info.website == "https://acme.test/"


def test_refresh_twice_is_idempotent(kb_services):
    kb = kb_services.orchestrator
    kb.initialize("site-1")
    before = _vector_ids(kb_services)
    assert kb.refresh("site-1").status == "ready"
    assert kb.refresh("site-1").status == "ready"
    assert _vector_ids(kb_services) == before
    assert kb.get_status("site-1").status == "ready"


def test_refresh_removes_vectors_of_vanished_pages(kb_services, site_pages):
    kb = kb_services.orchestrator
    kb.initialize("site-1")
    assert kb_services.index.count("site-1") == 3

    del site_pages["https://acme.test/about"]
    status = kb.refresh("site-1")
    assert status.total_documents == 2
    assert kb_services.index.count("site-1") == 2
    assert {d.url for d in kb.get_documents("site-1")} == {
        "https://acme.test", "https://acme.test/services",
    }


def test_delete_moves_to_disabled_and_wipes(kb_services):
    kb = kb_services.orchestrator
    kb.initialize("site-1")
    status = kb.delete("site-1")
    assert status.status == "disabled"
    assert kb.get_status("site-1").status == "disabled"
    assert kb_services.index.count("site-1") == 0
    assert kb.get_documents("site-1") == []
    assert kb_services.store.get_profile("site-1") is None
    assert not kb_services.store.is_rag_enabled("site-1")

    # disabled --initialize--> ready
    assert kb.initialize("site-1").status == "ready"
    assert kb_services.index.count("site-1") == 3


def test_delete_from_any_state(kb_services):
    kb = kb_services.orchestrator
    assert kb.delete("site-1").status == "disabled"
    assert kb.delete("never-seen").status == "disabled"
    assert kb.get_status("never-seen").status == "disabled"


def test_refresh_requires_enabled_knowledge_base(kb_services):
    kb = kb_services.orchestrator
    with pytest.raises(InvalidStateError):
        kb.refresh("site-1")
    kb.initialize("site-1")
    kb.delete("site-1")
    with pytest.raises(InvalidStateError):
        kb.refresh("site-1")


def test_unknown_site_is_not_initialized(kb_services):
    with pytest.raises(SiteNotFoundError):
        kb_services.orchestrator.initialize("missing")
    assert kb_services.orchestrator.get_status("missing") is None


def test_crawl_without_pages_records_error(kb_services, site_pages):
    site_pages.clear()
    kb = kb_services.orchestrator
    with pytest.raises(CrawlError):
        kb.initialize("site-1")
    status = kb.get_status("site-1")
    assert status.status == "error"
    assert "no usable pages" in status.error_message


def test_vector_store_failure_is_fatal(kb_services, monkeypatch):
    def broken_upsert(namespace, records):
        raise VectorStoreError("disk full")

    monkeypatch.setattr(kb_services.index.client, "upsert", broken_upsert)
    with pytest.raises(VectorStoreError):
        kb_services.orchestrator.initialize("site-1")
    status = kb_services.orchestrator.get_status("site-1")
    assert status.status == "error"
    assert status.error_message == "disk full"


def test_error_then_refresh_recovers(kb_services, site_pages):
    saved = dict(site_pages)
    site_pages.clear()
    kb = kb_services.orchestrator
    with pytest.raises(CrawlError):
        kb.initialize("site-1")
    site_pages.update(saved)
    status = kb.refresh("site-1")
    assert status.status == "ready"
    assert status.error_message is None


def test_get_status_never_raises(kb_services, monkeypatch):
    def broken(site_id):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(kb_services.store, "get_status", broken)
    status = kb_services.orchestrator.get_status("site-1")
    assert status.status == "error"
    assert "database unavailable" in status.error_message


def test_statistics(kb_services):
    kb = kb_services.orchestrator
    kb.initialize("site-1")
    stats = kb.get_statistics("site-1")
    assert stats.total_documents == 3
    assert sum(stats.documents_by_type.values()) == 3
    assert stats.vector_count == 3
    assert stats.average_word_count > 0
    assert stats.last_refresh is not None


def test_pipeline_runs_inside_site_lock(kb_services):
    held = []

    class RecordingLocks(SiteLockRegistry):
        def hold(self, site_id):
            held.append(site_id)
            return super().hold(site_id)

    kb_services.orchestrator.locks = RecordingLocks()
    kb_services.orchestrator.initialize("site-1")
    kb_services.orchestrator.refresh("site-1")
    kb_services.orchestrator.delete("site-1")
    assert held == ["site-1", "site-1", "site-1"]


def test_site_lock_registry_serializes_same_site():
    locks = SiteLockRegistry()
    active = []
    overlaps = []

    def worker():
        with locks.hold("s"):
            active.append(1)
            if len(active) > 1:
                overlaps.append(True)
            time.sleep(0.01)
            active.pop()

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert overlaps == []


def test_site_lock_registry_does_not_block_other_sites():
    locks = SiteLockRegistry()
    with locks.hold("a"):
        acquired = threading.Event()

        def other():
            with locks.hold("b"):
                acquired.set()

        t = threading.Thread(target=other)
        t.start()
        assert acquired.wait(timeout=1.0)
        t.join()


def test_redis_site_locks_acquire_and_release():
    client = MagicMock()
    lock = client.lock.return_value
    locks = RedisSiteLocks(client, timeout=30)
    with locks.hold("site-1"):
        lock.acquire.assert_called_once_with(blocking=True)
        lock.release.assert_not_called()
    client.lock.assert_called_once_with("sitekb:lock:site-1", timeout=30)
    lock.release.assert_called_once()


def test_delete_disables_even_when_vector_wipe_fails(kb_services, monkeypatch):
    kb = kb_services.orchestrator
    kb.initialize("site-1")

    def broken_wipe(site_id):
        raise VectorStoreError("vector backend unreachable")

    monkeypatch.setattr(kb_services.index, "delete_site", broken_wipe)
    with pytest.raises(VectorStoreError):
        kb.delete("site-1")

    assert kb.get_status("site-1").status == "disabled"
    assert not kb_services.store.is_rag_enabled("site-1")
    assert kb_services.store.get_profile("site-1") is None
    assert kb.get_documents("site-1") == []
    with pytest.raises(InvalidStateError):
        kb.refresh("site-1")

    # retrying once the backend is back finishes the wipe
    monkeypatch.undo()
    assert kb.delete("site-1").status == "disabled"
    assert kb_services.index.count("site-1") == 0
