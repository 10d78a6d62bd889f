"""StoreConfig loading and validation."""

import json
import logging

import pytest

from reposhelf.config import DEFAULT_AUTHOR, DEFAULT_SHARE_TOKEN_TTL, StoreConfig
from reposhelf.store import ProjectStore


def write_config(root, data):
    root.mkdir(parents=True, exist_ok=True)
    (root / "config.json").write_text(json.dumps(data))


class TestDefaults:
    def test_missing_file(self, tmp_path):
        cfg = StoreConfig.load(tmp_path)
        assert cfg.root == tmp_path
        assert cfg.templates_dir is None
        assert cfg.default_author == DEFAULT_AUTHOR
        assert cfg.max_blob_size == 0
        assert cfg.share_token_ttl == DEFAULT_SHARE_TOKEN_TTL

    def test_no_root(self):
        with pytest.raises(ValueError, match="No store root"):
            StoreConfig.load()


class TestFile:
    def test_values_read(self, tmp_path):
        write_config(
            tmp_path,
            {"templates_dir": "tpl", "default_author": "ops", "max_blob_size": 1024},
        )
        cfg = StoreConfig.load(tmp_path)
        assert cfg.templates_dir == tmp_path / "tpl"
        assert cfg.default_author == "ops"
        assert cfg.max_blob_size == 1024

    @pytest.mark.parametrize("key", ["max_blob_size", "max_tree_depth"])
    def test_negative_limit_rejected(self, tmp_path, key):
        write_config(tmp_path, {key: -1})
        with pytest.raises(ValueError, match=f"{key} must be >= 0"):
            StoreConfig.load(tmp_path)

    def test_zero_ttl_rejected(self, tmp_path):
        write_config(tmp_path, {"share_token_ttl": 0})
        with pytest.raises(ValueError, match="share_token_ttl"):
            StoreConfig.load(tmp_path)

    def test_invalid_json(self, tmp_path):
        (tmp_path / "config.json").write_text("{not json")
        with pytest.raises(ValueError, match="Invalid config file"):
            StoreConfig.load(tmp_path)

    def test_not_an_object(self, tmp_path):
        (tmp_path / "config.json").write_text("[1, 2]")
        with pytest.raises(ValueError, match="expected a JSON object"):
            StoreConfig.load(tmp_path)

    def test_unknown_keys_warned_and_kept(self, tmp_path, caplog):
        write_config(tmp_path, {"colour": "blue"})
        with caplog.at_level(logging.WARNING, logger="reposhelf.config"):
            cfg = StoreConfig.load(tmp_path)
        assert cfg.extra == {"colour": "blue"}
        assert "colour" in caplog.text


class TestEnvironment:
    def test_env_overrides_file(self, tmp_path, monkeypatch):
        write_config(tmp_path, {"default_author": "file"})
        monkeypatch.setenv("REPOSHELF_AUTHOR", "env")
        monkeypatch.setenv("REPOSHELF_TEMPLATES", str(tmp_path / "elsewhere"))
        cfg = StoreConfig.load(tmp_path)
        assert cfg.default_author == "env"
        assert cfg.templates_dir == tmp_path / "elsewhere"

    def test_root_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("REPOSHELF_ROOT", str(tmp_path))
        assert ProjectStore.open().root == tmp_path


class TestLimitsApplied:
    def test_blob_limit_reaches_store(self, tmp_path):
        write_config(tmp_path, {"max_blob_size": 4096})
        store = ProjectStore.open(tmp_path)
        store.create_project("p")
        with pytest.raises(ValueError, match="exceeds limit"):
            store.put_file("p", "big.bin", b"x" * 4097)
        assert "big.bin" not in [e.path for e in store.list_files("p")]
        assert store.pending("p") is None

    def test_to_dict(self, tmp_path):
        d = StoreConfig(root=tmp_path).to_dict()
        assert d["root"] == str(tmp_path)
        assert d["templates_dir"] is None
