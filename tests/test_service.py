"""Integration tests for docvault.repository.service: end-to-end repository flows."""

from unittest.mock import MagicMock

import pytest

from docvault.engine.errors import NotFoundError, PermissionDenied, StorageError, ValidationError
from docvault.repository.models import BrowseGroup, Category, NotificationCategory, Visibility
from docvault.repository.service import RepositoryService


class TestScenarios:

    def test_delete_and_restore_folder(self, service):
        docs = service.create_folder("Docs", owner_id="u1")
        report = service.upload_file("Report.pdf", b"%PDF-1", owner_id="u1", parent_id=docs.id)

        service.soft_delete(docs.id, "u1")
        assert service.store.get(docs.id).is_deleted
        assert service.store.get(report.id).is_deleted

        service.restore(docs.id, "u1")
        assert not service.store.get(docs.id).is_deleted
        assert not service.store.get(report.id).is_deleted

    def test_restore_old_version_archives_newest(self, service):
        report = service.upload_file("Report.pdf", b"one", owner_id="u1")
        v2 = service.commit_version(report.id, "u1", b"two")
        v3 = service.commit_version(report.id, "u1", b"three")
        live = service.restore_version(report.id, 1, "u1")

        versions = service.list_versions(report.id, "u1")
        assert versions[0].version_number == 3
        assert versions[0].content_locator == v3.content_locator
        assert live.content_locator == report.content_locator
        assert v2.content_locator not in {live.content_locator, v3.content_locator}

    def test_specific_visibility_in_listing(self, service):
        parent = service.create_folder("Shared", owner_id="u1", visibility=Visibility.EVERYONE)
        node = service.upload_file("plan.docx", b"p", owner_id="u1", parent_id=parent.id)
        service.set_visibility(node.id, "u1", Visibility.SPECIFIC, ["u2"])

        ids = lambda viewer: [n.id for n in service.list_children(parent.id, viewer)]
        assert node.id not in ids("u3")
        assert node.id in ids("u2")
        assert node.id in ids("u1")

    def test_empty_trash_leaves_other_users_alone(self, service):
        u1 = [service.upload_file(f"a{i}.txt", b"a", owner_id="u1") for i in range(2)]
        u2 = [service.upload_file(f"b{i}.txt", b"b", owner_id="u2") for i in range(3)]
        for n in u1:
            service.soft_delete(n.id, "u1")
        for n in u2:
            service.soft_delete(n.id, "u2")

        result = service.empty_trash("u1")
        assert sorted(result.purged_ids) == sorted(n.id for n in u1)
        assert len(service.list_trash("u2")) == 3
        for n in u1:
            with pytest.raises(NotFoundError):
                service.store.get(n.id)


class TestReads:

    def test_get_node_visibility(self, service, board_tree):
        assert service.get_node(board_tree["board"].id, "alice").name == "Board"
        with pytest.raises(PermissionDenied):
            service.get_node(board_tree["board"].id, "bob")

    def test_trashed_node_owner_only(self, service, board_tree):
        service.set_visibility(board_tree["minutes"].id, "alice", Visibility.EVERYONE)
        service.soft_delete(board_tree["minutes"].id, "alice")
        assert service.get_node(board_tree["minutes"].id, "alice").is_deleted
        with pytest.raises(PermissionDenied):
            service.get_node(board_tree["minutes"].id, "bob")

    def test_list_children_of_invisible_folder(self, service, board_tree):
        assert service.list_children(board_tree["board"].id, "bob") == []

    def test_visible_child_of_private_folder_listed(self, service):
        private = service.create_folder("Private", owner_id="u1")
        public = service.upload_file(
            "notice.txt", b"n", owner_id="u1", parent_id=private.id, visibility=Visibility.EVERYONE,
        )
        service.upload_file("secret.txt", b"s", owner_id="u1", parent_id=private.id)

        with pytest.raises(PermissionDenied):
            service.get_node(private.id, "u3")
        assert [n.id for n in service.list_children(private.id, "u3")] == [public.id]

    def test_list_children_of_file(self, service, board_tree):
        with pytest.raises(ValidationError):
            service.list_children(board_tree["minutes"].id, "alice")

    def test_trash_listing_inside_folder(self, service, board_tree):
        service.soft_delete(board_tree["minutes"].id, "alice")
        trashed = service.list_children(board_tree["board"].id, "alice", trash=True)
        assert [n.id for n in trashed] == [board_tree["minutes"].id]

    def test_recent_default_limit(self, service):
        for i in range(10):
            service.upload_file(f"{i}.txt", b"x", owner_id="alice")
        assert len(service.list_recent("alice")) == 8
        assert len(service.list_recent("alice", limit=3)) == 3

    def test_shared_with_me(self, service, board_tree):
        service.set_visibility(board_tree["finance"].id, "alice", Visibility.SPECIFIC, ["bob"])
        assert [n.id for n in service.list_shared_with_me("bob")] == [board_tree["finance"].id]
        assert service.list_shared_with_me("alice") == []

    def test_by_category(self, service):
        service.upload_file("agenda.bin", b"x", owner_id="alice", category=Category.MEETING_MINUTES)
        service.upload_file("cat.png", b"x", owner_id="alice")
        assert [n.name for n in service.list_by_category("alice", "Documents")] == ["agenda.bin"]
        assert [n.name for n in service.list_by_category("alice", BrowseGroup.IMAGES)] == ["cat.png"]

    def test_unknown_category(self, service):
        with pytest.raises(ValidationError):
            service.list_by_category("alice", "Spreadsheets")

    def test_download_url(self, service, board_tree, blob_store):
        url = service.download_url(board_tree["minutes"].id, "alice")
        assert url.startswith("file://")
        assert url.endswith(board_tree["minutes"].content_locator)
        with pytest.raises(ValidationError):
            service.download_url(board_tree["board"].id, "alice")


class TestUpload:

    def test_stores_bytes_and_metadata(self, service, blob_store):
        node = service.upload_file("Minutes.PDF", b"abc", owner_id="alice", category="Meeting Minutes")
        assert node.size == 3
        assert node.mime_type == "application/pdf"
        assert node.category is Category.MEETING_MINUTES
        assert node.content_locator.startswith("alice/")
        assert node.content_locator.endswith(".pdf")
        assert blob_store.read(node.content_locator) == b"abc"

    def test_invalid_name_uploads_nothing(self, service, monkeypatch):
        put = MagicMock()
        monkeypatch.setattr(service.blobs, "put", put)
        with pytest.raises(ValidationError):
            service.upload_file("   ", b"abc", owner_id="alice")
        put.assert_not_called()

    def test_failed_create_removes_blob(self, service, board_tree, blob_store):
        before = {p for p in blob_store.root.rglob("*") if p.is_file()}
        with pytest.raises(ValidationError):
            service.upload_file("x.txt", b"abc", owner_id="alice", parent_id=board_tree["minutes"].id)
        after = {p for p in blob_store.root.rglob("*") if p.is_file()}
        assert after == before

    def test_blob_failure_creates_no_node(self, service, monkeypatch):
        monkeypatch.setattr(service.blobs, "put", MagicMock(side_effect=StorageError("down")))
        with pytest.raises(StorageError):
            service.upload_file("x.txt", b"abc", owner_id="alice")
        assert service.list_children(None, "alice") == []

    def test_cannot_create_in_invisible_folder(self, service, board_tree):
        with pytest.raises(PermissionDenied):
            service.create_folder("Sneaky", owner_id="bob", parent_id=board_tree["board"].id)


class TestMetadata:

    def test_toggle_pin_twice(self, service, board_tree):
        node = board_tree["minutes"]
        assert service.toggle_pin(node.id, "alice").is_pinned
        assert not service.toggle_pin(node.id, "alice").is_pinned

    def test_pin_non_owner(self, service, board_tree):
        service.set_visibility(board_tree["board"].id, "alice", Visibility.EVERYONE)
        with pytest.raises(PermissionDenied):
            service.toggle_pin(board_tree["board"].id, "bob")

    def test_rename(self, service, board_tree):
        assert service.rename(board_tree["minutes"].id, "alice", " minutes-final.pdf ").name == "minutes-final.pdf"
        with pytest.raises(ValidationError):
            service.rename(board_tree["minutes"].id, "alice", "a/b")

    def test_set_visibility_validation(self, service, board_tree):
        with pytest.raises(ValidationError):
            service.set_visibility(board_tree["board"].id, "alice", Visibility.EVERYONE, ["bob"])
        with pytest.raises(ValidationError):
            service.set_visibility(board_tree["board"].id, "alice", Visibility.SPECIFIC, [])
        with pytest.raises(ValidationError):
            service.set_visibility(board_tree["board"].id, "alice", "public")

    def test_set_visibility_back_to_private(self, service, board_tree):
        node = board_tree["board"]
        service.set_visibility(node.id, "alice", Visibility.SPECIFIC, ["bob"])
        updated = service.set_visibility(node.id, "alice", "private")
        assert updated.visibility is Visibility.PRIVATE
        assert updated.shared_with == frozenset()


class TestCollaborators:

    def test_upload_notifies_audience(self, service, notifier):
        service.upload_file("all.pdf", b"x", owner_id="alice", visibility=Visibility.EVERYONE)
        assert [n.title for n in notifier.list_for("bob")] == ["New file uploaded"]
        assert [n.title for n in notifier.list_for("carol")] == ["New file uploaded"]
        assert notifier.list_for("alice") == []

    def test_private_upload_notifies_nobody(self, service, notifier):
        service.upload_file("mine.pdf", b"x", owner_id="alice")
        assert all(notifier.list_for(u) == [] for u in ("alice", "bob", "carol"))

    def test_share_notifies_new_recipients_only(self, service, notifier, board_tree):
        node = board_tree["minutes"]
        service.set_visibility(node.id, "alice", Visibility.SPECIFIC, ["bob"])
        service.set_visibility(node.id, "alice", Visibility.SPECIFIC, ["bob", "carol"])
        assert len(notifier.list_for("bob")) == 1
        assert len(notifier.list_for("carol")) == 1
        assert notifier.list_for("bob")[0].category is NotificationCategory.FILE

    def test_version_commit_notifies_actor_owner_and_shares(self, service, notifier, board_tree):
        node = board_tree["minutes"]
        service.set_visibility(node.id, "alice", Visibility.SPECIFIC, ["bob", "carol"])
        service.commit_version(node.id, "bob", b"v2")
        for user in ("alice", "bob", "carol"):
            assert "New version uploaded" in [n.title for n in notifier.list_for(user)]

    def test_audit_trail(self, service, board_tree):
        node = board_tree["minutes"]
        service.rename(node.id, "alice", "renamed.pdf")
        service.toggle_pin(node.id, "alice")
        actions = [e.action for e in service.audit_trail(node.id, "alice")]
        assert actions == ["pin", "rename", "upload"]
        assert service.audit_trail(node.id, "alice")[1].metadata["old_name"] == "minutes.pdf"

    def test_audit_trail_requires_visibility(self, service, board_tree):
        with pytest.raises(PermissionDenied):
            service.audit_trail(board_tree["minutes"].id, "bob")

    def test_collaborator_failures_do_not_undo(self, session_factory, blob_store):
        notifier = MagicMock()
        notifier.notify.side_effect = RuntimeError("smtp down")
        audit = MagicMock()
        audit.record.side_effect = RuntimeError("audit db down")
        service = RepositoryService(
            session_factory, blob_store,
            notifier=notifier, audit=audit,
            user_directory=lambda: ["alice", "bob"],
        )

        node = service.upload_file("x.pdf", b"x", owner_id="alice", visibility=Visibility.EVERYONE)
        assert service.get_node(node.id, "bob").name == "x.pdf"
        notifier.notify.assert_called_once()
        audit.record.assert_called_once()

    def test_no_collaborators(self, session_factory, blob_store):
        service = RepositoryService(session_factory, blob_store)
        node = service.upload_file("x.pdf", b"x", owner_id="alice")
        assert service.audit_trail(node.id, "alice") == []


class TestFromConfig:

    def test_wires_everything(self, tmp_path, request):
        from docvault.engine.config import DocVaultConfig

        config = DocVaultConfig(
            database={"url": "sqlite://"},
            blob_store={"root": str(tmp_path / "blobs")},
            trash={"retention_days": 5, "cascade_batch_size": 10},
            listing={"recent_limit": 2},
        )
        service = RepositoryService.from_config(config, create_tables=True)
        request.addfinalizer(service.close)
        assert service.feed is not None
        assert service.blobs.root == (tmp_path / "blobs").resolve()

        for i in range(3):
            service.upload_file(f"{i}.txt", b"x", owner_id="alice")
        assert len(service.list_recent("alice")) == 2

    def test_redis_relay_started_when_enabled(self, tmp_path, request, monkeypatch):
        from docvault.engine.config import DocVaultConfig
        from docvault.repository import service as service_mod

        relay_cls = MagicMock()
        relay_cls.return_value.start.return_value = True
        monkeypatch.setattr(service_mod, "RedisChangeRelay", relay_cls)

        config = DocVaultConfig(
            database={"url": "sqlite://"},
            blob_store={"root": str(tmp_path / "blobs")},
            fanout={"redis_enabled": True, "redis_url": "redis://cache:6379/2", "channel": "dv"},
        )
        service = RepositoryService.from_config(config, create_tables=True)
        request.addfinalizer(service.close)

        relay_cls.assert_called_once_with(service.feed, "redis://cache:6379/2", "dv")
        assert service.relay is relay_cls.return_value
        service.close()
        relay_cls.return_value.stop.assert_called_once()
        assert service.relay is None

    def test_unreachable_redis_leaves_local_feed(self, tmp_path, request, monkeypatch):
        from docvault.engine.config import DocVaultConfig
        from docvault.repository import service as service_mod

        relay_cls = MagicMock()
        relay_cls.return_value.start.return_value = False
        monkeypatch.setattr(service_mod, "RedisChangeRelay", relay_cls)

        config = DocVaultConfig(
            database={"url": "sqlite://"},
            blob_store={"root": str(tmp_path / "blobs")},
            fanout={"redis_enabled": True},
        )
        service = RepositoryService.from_config(config, create_tables=True)
        request.addfinalizer(service.close)
        assert service.relay is None
        assert service.feed is not None


class TestRemoteBlobStore:

    @pytest.fixture
    def remote_service(self, session_factory, failing_blob_store):
        return RepositoryService(session_factory, failing_blob_store)

    def test_upload_and_download_url(self, remote_service, failing_blob_store):
        node = remote_service.upload_file("a.pdf", b"abc", owner_id="alice")
        (path, data), _ = failing_blob_store.put.call_args
        assert path == node.content_locator
        assert data == b"abc"
        assert remote_service.download_url(node.id, "alice") == f"https://blobs.example/{path}"

    def test_unreachable_bucket_keeps_trash(self, remote_service, failing_blob_store):
        node = remote_service.upload_file("a.pdf", b"abc", owner_id="alice")
        remote_service.soft_delete(node.id, "alice")
        failing_blob_store.delete.side_effect = StorageError("bucket unavailable", paths=[node.content_locator])

        with pytest.raises(StorageError):
            remote_service.empty_trash("alice")
        assert [n.id for n in remote_service.list_trash("alice")] == [node.id]

        failing_blob_store.delete.side_effect = None
        assert remote_service.empty_trash("alice").purged_ids == [node.id]
