"""
CLI tests.

Uses subprocess to invoke the CLI and verify exit codes and output.
"""

import base64
import json
import os
import subprocess
import sys
from pathlib import Path

import pytest


def run_cli(*args, root=None, input=None, expect_fail=False):
    """Run a reposhelf CLI command and return (returncode, stdout, stderr)."""
    cmd = [sys.executable, "-X", "utf8", "-m", "reposhelf.cli"]
    if root is not None:
        cmd += ["--root", str(root)]
    cmd += list(args)
    result = subprocess.run(
        cmd,
        capture_output=True,
        input=input,
        env={**os.environ, "PYTHONPATH": str(Path(__file__).parent.parent)},
    )
    stdout = result.stdout.decode("utf-8", errors="replace")
    stderr = result.stderr.decode("utf-8", errors="replace")
    if not expect_fail and result.returncode != 0:
        print(f"STDOUT: {stdout}")
        print(f"STDERR: {stderr}")
    return result.returncode, stdout, stderr


@pytest.fixture
def root(tmp_path):
    return tmp_path / "store"


@pytest.fixture
def created(root):
    rc, out, err = run_cli("create", "demo", root=root)
    assert rc == 0, err
    return root


class TestCreate:
    def test_create_json(self, root):
        rc, out, err = run_cli("--json", "create", "demo", root=root)
        assert rc == 0
        data = json.loads(out)
        assert data["project_id"] == "demo"
        assert len(data["head"]) == 64

    def test_create_twice_fails(self, created):
        rc, out, err = run_cli("create", "demo", root=created, expect_fail=True)
        assert rc == 1
        assert err.startswith("Error: ")

    def test_create_twice_json_error(self, created):
        rc, out, err = run_cli("--json", "create", "demo", root=created, expect_fail=True)
        assert rc == 1
        assert json.loads(out)["error"]["kind"] == "already_exists"

    def test_no_root(self):
        rc, out, err = run_cli("projects", expect_fail=True)
        assert rc == 1
        assert "REPOSHELF_ROOT" in err


class TestFiles:
    def test_put_from_stdin_and_cat(self, created):
        rc, out, err = run_cli("-q", "put", "demo", "src/a.txt", root=created, input=b"hello\n")
        assert rc == 0
        assert len(out.strip()) == 64
        rc, out, err = run_cli("cat", "demo", "src/a.txt", root=created)
        assert out == "hello\n"

    def test_put_from_file(self, created, tmp_path):
        src = tmp_path / "local.bin"
        src.write_bytes(b"\x00\x01binary")
        rc, out, err = run_cli("put", "demo", "data.bin", str(src), root=created)
        assert rc == 0
        rc, out, err = run_cli("--json", "cat", "demo", "data.bin", root=created)
        assert base64.b64decode(json.loads(out)["content_base64"]) == b"\x00\x01binary"

    def test_cat_at_commit(self, created):
        rc, first, _ = run_cli("-q", "put", "demo", "a.txt", root=created, input=b"v1")
        run_cli("put", "demo", "a.txt", root=created, input=b"v2")
        rc, out, err = run_cli("cat", "demo", "a.txt", "--at", first.strip()[:12], root=created)
        assert out == "v1"

    def test_rm_and_ls(self, created):
        rc, out, err = run_cli("rm", "demo", "README.md", root=created)
        assert rc == 0
        rc, out, err = run_cli("--json", "ls", "demo", root=created)
        assert [e["path"] for e in json.loads(out)] == ["App.js", "example.js"]

    def test_cat_missing(self, created):
        rc, out, err = run_cli("cat", "demo", "nope.txt", root=created, expect_fail=True)
        assert rc == 1
        assert "File not found" in err or "not found" in err.lower()

    def test_traversal(self, created):
        rc, out, err = run_cli(
            "--json", "put", "demo", "../escape.txt", root=created, input=b"x", expect_fail=True
        )
        assert rc == 1
        assert json.loads(out)["error"]["kind"] == "invalid_path"


class TestHistory:
    def test_log(self, created):
        run_cli("put", "demo", "a.txt", "-m", "add a", root=created, input=b"a")
        rc, out, err = run_cli("--json", "log", "demo", root=created)
        assert [c["message"] for c in json.loads(out)] == [
            "add a",
            "Initial commit with template files",
        ]
        rc, out, err = run_cli("--json", "log", "demo", "a.txt", root=created)
        assert [c["message"] for c in json.loads(out)] == ["add a"]

    def test_show(self, created):
        rc, out, err = run_cli("-q", "log", "demo", root=created)
        head = out.split()[0]
        rc, out, err = run_cli("--json", "show", "demo", head[:10], root=created)
        data = json.loads(out)
        assert data["hash"] == head
        assert data["changes"]["App.js"] == "added"


class TestLifecycle:
    def test_clone_delete_projects(self, created):
        rc, out, err = run_cli("clone", "demo", "copy", root=created)
        assert rc == 0
        rc, out, err = run_cli("--json", "projects", root=created)
        assert json.loads(out) == ["copy", "demo"]
        rc, out, err = run_cli("--json", "delete", "copy", root=created)
        assert json.loads(out)["deleted"] is True
        rc, out, err = run_cli("--json", "delete", "copy", root=created)
        assert json.loads(out)["deleted"] is False

    def test_clone_with_history(self, created):
        run_cli("put", "demo", "a.txt", root=created, input=b"a")
        run_cli("clone", "--with-history", "demo", "copy", root=created)
        rc, out, err = run_cli("--json", "log", "copy", root=created)
        assert len(json.loads(out)) == 2


class TestHealth:
    def test_status_and_verify(self, created):
        rc, out, err = run_cli("--json", "status", "demo", root=created)
        status = json.loads(out)
        assert status["commits"] == 1
        assert status["pending"] is None
        rc, out, err = run_cli("--json", "verify", "demo", root=created)
        assert rc == 0
        assert json.loads(out)["ok"] is True

    def test_verify_fails_on_out_of_band_edit(self, created):
        (created / "demo" / "App.js").write_text("tampered")
        rc, out, err = run_cli("verify", "demo", root=created, expect_fail=True)
        assert rc == 1
        assert "uncommitted change" in out

    def test_recover_all(self, created):
        (created / "demo" / "stray.txt").write_text("stray")
        rc, out, err = run_cli("--json", "recover", root=created)
        assert rc == 0
        [result] = json.loads(out)["projects"]
        assert result["commit"] is not None
        rc, out, err = run_cli("verify", "demo", root=created)
        assert rc == 0


class TestMisc:
    def test_templates(self, root):
        rc, out, err = run_cli("--json", "templates", root=root)
        assert json.loads(out)[0]["name"] == "default"

    def test_version(self):
        rc, out, err = run_cli("--version")
        assert rc == 0
        assert "reposhelf" in out

    def test_no_command(self, root):
        rc, out, err = run_cli(root=root, expect_fail=True)
        assert rc == 1
