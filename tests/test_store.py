"""ProjectStore behaviour: lifecycle, file operations, history queries."""

import pytest

from reposhelf.config import StoreConfig
from reposhelf.errors import (
    AlreadyExists,
    FileNotFound,
    InvalidPath,
    NotFound,
    NothingToCommit,
    ProjectNotFound,
    SourceMissing,
    TargetExists,
)
from reposhelf.fsutil import HISTORY_DIR_NAME
from reposhelf.store import CLONE_COMMIT_MESSAGE, INITIAL_COMMIT_MESSAGE, ProjectStore
from reposhelf.templates import DEFAULT_TEMPLATE, ProjectTemplate, TemplateFile


def snapshot(store, project_id):
    return {e.path: store.get_file(project_id, e.path) for e in store.list_files(project_id)}


class TestCreateProject:
    def test_default_template(self, store, project):
        assert [e.path for e in store.list_files(project)] == ["App.js", "README.md", "example.js"]
        history = store.project_history(project)
        assert len(history) == 1
        assert history[0].message == INITIAL_COMMIT_MESSAGE
        assert store.get_file(project, "App.js") == DEFAULT_TEMPLATE.bundle()["App.js"].encode()

    def test_custom_template(self, tmp_path):
        store = ProjectStore(StoreConfig(root=tmp_path / "s", templates_dir=tmp_path / "t"))
        store.templates.save(
            ProjectTemplate(name="tiny", files=[TemplateFile("src/main.py", "print(1)\n")])
        )
        store.create_project("p", template="tiny")
        assert snapshot(store, "p") == {"src/main.py": b"print(1)\n"}

    def test_already_exists(self, store, project):
        with pytest.raises(AlreadyExists):
            store.create_project(project)
        assert len(store.project_history(project)) == 1

    @pytest.mark.parametrize("bad", ["", ".hidden", "a/b", "..", "x\0y"])
    def test_invalid_id(self, store, bad):
        with pytest.raises(InvalidPath):
            store.create_project(bad)
        assert store.list_projects() == []

    def test_failed_commit_leaves_nothing(self, store, monkeypatch):
        def boom(*args, **kwargs):
            raise RuntimeError("disk on fire")

        monkeypatch.setattr(store.history, "commit_all", boom)
        with pytest.raises(RuntimeError):
            store.create_project("p")
        assert not store.exists("p")

    def test_author_recorded(self, store):
        store.create_project("p", author="alice")
        assert store.project_history("p")[0].author == "alice"


class TestFiles:
    def test_put_then_get(self, store, project):
        h = store.put_file(project, "a.txt", b"x")
        assert store.get_file(project, "a.txt") == b"x"
        assert store.project_history(project)[0].hash == h

    def test_put_default_message(self, store, project):
        store.put_file(project, "src/a.txt", b"x")
        assert store.project_history(project)[0].message == "Update src/a.txt"

    def test_file_history_grows_per_new_content(self, store, project):
        store.put_file(project, "a.txt", b"1", message="one")
        store.put_file(project, "a.txt", b"2", message="two")
        assert [c.message for c in store.file_history(project, "a.txt")] == ["two", "one"]

    def test_unchanged_content(self, store, project):
        store.put_file(project, "a.txt", b"same")
        with pytest.raises(NothingToCommit):
            store.put_file(project, "a.txt", b"same")
        assert len(store.file_history(project, "a.txt")) == 1
        assert store.pending(project) is None

    def test_nested_paths_created(self, store, project):
        store.put_file(project, "deep/er/still/file.js", b"js")
        assert "deep/er/still/file.js" in [e.path for e in store.list_files(project)]

    def test_remove_file(self, store, project):
        store.put_file(project, "a.txt", b"x")
        store.remove_file(project, "a.txt")
        with pytest.raises(NotFound):
            store.get_file(project, "a.txt")
        assert "a.txt" not in [e.path for e in store.list_files(project)]
        assert store.project_history(project)[0].message == "Delete a.txt"

    def test_remove_missing_file(self, store, project):
        with pytest.raises(FileNotFound):
            store.remove_file(project, "nope.txt")
        assert store.pending(project) is None
        assert len(store.project_history(project)) == 1

    def test_get_missing_file(self, store, project):
        with pytest.raises(FileNotFound) as exc:
            store.get_file(project, "./nope.txt")
        assert exc.value.path == "nope.txt"
        assert isinstance(exc.value, LookupError)

    @pytest.mark.parametrize(
        "bad", ["../../etc/passwd", "/etc/passwd", f"{HISTORY_DIR_NAME}/history.db", ""]
    )
    def test_traversal_rejected(self, store, project, bad, tmp_path):
        before = snapshot(store, project)
        with pytest.raises(InvalidPath):
            store.put_file(project, bad, b"owned")
        assert snapshot(store, project) == before
        assert len(store.project_history(project)) == 1
        assert not (tmp_path / "etc").exists()

    def test_missing_project(self, store):
        with pytest.raises(ProjectNotFound):
            store.put_file("ghost", "a.txt", b"x")
        with pytest.raises(ProjectNotFound):
            store.get_file("ghost", "a.txt")
        with pytest.raises(ProjectNotFound):
            store.list_files("ghost")
        with pytest.raises(ProjectNotFound):
            store.project_history("ghost")

    def test_binary_content(self, store, project):
        data = bytes(range(256)) * 4
        store.put_file(project, "blob.bin", data)
        assert store.get_file(project, "blob.bin") == data

    def test_parent_is_a_file(self, store, project):
        store.put_file(project, "a.txt", b"x")
        before = snapshot(store, project)
        with pytest.raises(InvalidPath) as exc:
            store.put_file(project, "a.txt/b.txt", b"y")
        assert exc.value.kind == "invalid_path"
        assert exc.value.path == "a.txt/b.txt"
        assert snapshot(store, project) == before
        assert len(store.project_history(project)) == 2
        assert store.pending(project) is None

    def test_grandparent_is_a_file(self, store, project):
        store.put_file(project, "a", b"x")
        with pytest.raises(InvalidPath):
            store.put_file(project, "a/b/c.txt", b"y")
        assert store.get_file(project, "a") == b"x"
        assert store.pending(project) is None


class TestHistoryQueries:
    def test_file_at(self, store, project):
        first = store.put_file(project, "a.txt", b"v1")
        store.put_file(project, "a.txt", b"v2")
        assert store.file_at(project, first, "a.txt") == b"v1"
        assert store.file_at(project, first[:10], "a.txt") == b"v1"

    def test_file_at_before_creation(self, store, project):
        initial = store.project_history(project)[0].hash
        store.put_file(project, "a.txt", b"v1")
        with pytest.raises(FileNotFound):
            store.file_at(project, initial, "a.txt")

    def test_history_limit(self, store, project):
        for i in range(5):
            store.put_file(project, "a.txt", str(i).encode())
        assert len(store.project_history(project, limit=3)) == 3
        assert len(store.file_history(project, "a.txt", limit=2)) == 2

    def test_file_history_after_delete(self, store, project):
        store.put_file(project, "a.txt", b"x")
        store.remove_file(project, "a.txt")
        assert [c.changes["a.txt"] for c in store.file_history(project, "a.txt")] == [
            "deleted",
            "added",
        ]

    def test_head_and_get_commit(self, store, project):
        h = store.put_file(project, "a.txt", b"x", message="add a")
        head = store.head(project)
        assert head.hash == h == store.project_history(project)[0].hash
        assert store.get_commit(project, h[:8]).hash == h
        with pytest.raises(NotFound):
            store.get_commit(project, "f" * 40)
        with pytest.raises(ProjectNotFound):
            store.head("ghost")


class TestClone:
    def test_snapshot_clone(self, store, project):
        store.put_file(project, "src/lib/deep.js", b"deep")
        store.clone_project(project, "copy")
        assert snapshot(store, "copy") == snapshot(store, project)
        history = store.project_history("copy")
        assert len(history) == 1
        assert history[0].message == CLONE_COMMIT_MESSAGE

    def test_clone_is_independent(self, store, project):
        store.clone_project(project, "copy")
        store.put_file("copy", "App.js", b"changed")
        assert store.get_file(project, "App.js") != b"changed"
        assert len(store.project_history(project)) == 1

    def test_clone_with_history(self, store, project):
        store.put_file(project, "a.txt", b"x")
        store.clone_project(project, "copy", with_history=True)
        assert [c.hash for c in store.project_history("copy")] == [
            c.hash for c in store.project_history(project)
        ]
        assert store.verify("copy") == []

    def test_missing_source(self, store):
        with pytest.raises(SourceMissing):
            store.clone_project("ghost", "copy")
        assert not store.exists("copy")

    def test_existing_target(self, store, project):
        store.create_project("other")
        with pytest.raises(TargetExists):
            store.clone_project(project, "other")
        with pytest.raises(TargetExists):
            store.clone_project(project, project)


class TestDelete:
    def test_delete_twice(self, store, project):
        assert store.delete_project(project) is True
        assert store.delete_project(project) is False
        assert not store.exists(project)
        assert store.list_projects() == []

    def test_delete_missing(self, store):
        assert store.delete_project("never") is False

    def test_delete_then_recreate(self, store, project):
        store.put_file(project, "a.txt", b"x")
        store.delete_project(project)
        store.create_project(project)
        assert len(store.project_history(project)) == 1
        with pytest.raises(FileNotFound):
            store.get_file(project, "a.txt")


class TestStatusAndVerify:
    def test_status(self, store, project):
        status = store.status(project)
        assert status["project_id"] == project
        assert status["commits"] == 1
        assert status["files"] == 3
        assert status["uncommitted"] == {}
        assert status["pending"] is None
        assert status["head"] == store.project_history(project)[0].hash

    def test_verify_healthy(self, store, project):
        store.put_file(project, "a.txt", b"x")
        assert store.verify(project) == []

    def test_verify_reports_out_of_band_edit(self, store, project):
        (store.trees.path_for(project) / "App.js").write_text("edited behind our back")
        assert store.verify(project) == ["uncommitted change: modified App.js"]

    def test_recover_commits_out_of_band_edit(self, store, project):
        (store.trees.path_for(project) / "stray.txt").write_text("stray")
        result = store.recover(project)
        assert result["commit"] is not None
        assert store.verify(project) == []
        assert store.project_history(project)[0].message == "Recover uncommitted changes"

    def test_recover_clean_project(self, store, project):
        assert store.recover(project) == {"project_id": project, "commit": None, "pending": None}


class TestDepthLimit:
    @pytest.fixture
    def shallow(self, tmp_path):
        store = ProjectStore(StoreConfig(root=tmp_path / "shallow", max_tree_depth=2))
        store.create_project("p")
        return store

    def test_too_deep_write_rejected(self, shallow):
        with pytest.raises(InvalidPath) as exc:
            shallow.put_file("p", "a/b/c.txt", b"x")
        assert exc.value.kind == "invalid_path"
        assert exc.value.project_id == "p"
        assert len(shallow.project_history("p")) == 1
        assert shallow.pending("p") is None
        assert not (shallow.trees.path_for("p") / "a").exists()
        # the project stays usable
        shallow.put_file("p", "a/c.txt", b"x")
        assert "a/c.txt" in [e.path for e in shallow.list_files("p")]
        shallow.clone_project("p", "copy")
        assert shallow.get_file("copy", "a/c.txt") == b"x"

    def test_default_limit(self, store, project):
        with pytest.raises(InvalidPath):
            store.put_file(project, "d/" * 100 + "f.txt", b"x")
        assert len(store.project_history(project)) == 1
        store.put_file(project, "d/" * 99 + "f.txt", b"x")
        assert len(store.project_history(project)) == 2

    def test_out_of_band_deep_tree(self, shallow):
        deep = shallow.trees.path_for("p") / "a" / "b"
        deep.mkdir(parents=True)
        (deep / "x.txt").write_bytes(b"x")

        with pytest.raises(InvalidPath) as exc:
            shallow.list_files("p")
        assert exc.value.kind == "invalid_path"
        assert exc.value.project_id == "p"

        with pytest.raises(InvalidPath):
            shallow.clone_project("p", "copy")
        assert not shallow.exists("copy")
        assert shallow.pending("copy") is None
