"""
Tests for config loading, path resolution, startup preparation and logging setup.
"""

import json
import logging
from pathlib import Path

import pytest

import bi_sync
from bi_sync import (
    KIND_DIR,
    KIND_FILE,
    Ansi,
    ColorizingFormatter,
    SyncPair,
    build_effective_config,
    find_config_file,
    load_config,
    log_action,
    parse_args,
    parse_pairs,
    prepare_pairs,
    resolve_path,
    validate_pairs,
)


class TestResolvePath:
    def test_dot_relative(self, tmp_path):
        assert resolve_path("./data", tmp_path) == (tmp_path / "data").resolve()

    def test_parent_relative(self, tmp_path):
        base = tmp_path / "work"
        base.mkdir()
        assert resolve_path("../shared", base) == (tmp_path / "shared").resolve()

    def test_bare_relative(self, tmp_path):
        assert resolve_path("docs/notes", tmp_path) == (tmp_path / "docs" / "notes").resolve()

    def test_absolute_unchanged(self, tmp_path):
        assert resolve_path(str(tmp_path / "x"), Path("/somewhere/else")) == (tmp_path / "x").resolve()

    def test_home_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert resolve_path("~/mirror") == (tmp_path / "mirror").resolve()

    def test_defaults_to_cwd(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert resolve_path("./here") == (tmp_path / "here").resolve()


class TestParsePairs:
    def test_defaults(self, tmp_path):
        [pair] = parse_pairs({"syncs": [{"from": "./a", "to": "./b"}]}, tmp_path)

        assert pair.source == (tmp_path / "a").resolve()
        assert pair.destination == (tmp_path / "b").resolve()
        assert pair.ignored == ()
        assert pair.kind == KIND_DIR

    def test_keeps_order_and_fields(self, tmp_path):
        raw = {
            "syncs": [
                {"from": "./one", "to": "./two", "ignored": ["/.git", "node_modules"], "type": "dir"},
                {"from": "./a.conf", "to": "./b.conf", "type": "file"},
            ]
        }
        first, second = parse_pairs(raw, tmp_path)

        assert first.ignored == ("/.git", "node_modules")
        assert second.kind == KIND_FILE
        assert second.source.name == "a.conf"

    def test_empty_patterns_dropped(self, tmp_path):
        [pair] = parse_pairs({"syncs": [{"from": "./a", "to": "./b", "ignored": ["", "/.git"]}]}, tmp_path)
        assert pair.ignored == ("/.git",)

    @pytest.mark.parametrize(
        "raw",
        [
            {},
            {"syncs": []},
            {"syncs": ["nope"]},
            {"syncs": [{"to": "./b"}]},
            {"syncs": [{"from": "./a", "to": "  "}]},
            {"syncs": [{"from": "./a", "to": "./b", "type": "folder"}]},
            {"syncs": [{"from": "./a", "to": "./b", "ignored": "/.git"}]},
        ],
    )
    def test_invalid_entries(self, tmp_path, raw):
        with pytest.raises(ValueError):
            parse_pairs(raw, tmp_path)


class TestValidatePairs:
    def test_same_path_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="different"):
            validate_pairs([SyncPair(tmp_path / "a", tmp_path / "a")])

    def test_nested_destination_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="inside source"):
            validate_pairs([SyncPair(tmp_path / "a", tmp_path / "a" / "b")])

    def test_nested_source_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="inside destination"):
            validate_pairs([SyncPair(tmp_path / "a" / "b", tmp_path / "a")])

    def test_siblings_with_common_prefix_allowed(self, tmp_path):
        pairs = [SyncPair(tmp_path / "data", tmp_path / "data-copy")]
        assert validate_pairs(pairs) == pairs


class TestConfigFile:
    def test_load_config(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"syncs": [{"from": "/a", "to": "/b"}]}), encoding="utf-8")
        assert load_config(path)["syncs"][0]["from"] == "/a"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            load_config(tmp_path / "nope.json")

    def test_bad_json(self, tmp_path):
        path = tmp_path / "cfg.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValueError, match="not valid JSON"):
            load_config(path)

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        monkeypatch.setattr(bi_sync, "USER_CONFIG_PATH", tmp_path / "home.json")
        (tmp_path / "home.json").write_text("{}", encoding="utf-8")
        assert find_config_file(tmp_path / "explicit.json") == tmp_path / "explicit.json"

    def test_user_config_before_bundled(self, tmp_path, monkeypatch):
        monkeypatch.setattr(bi_sync, "USER_CONFIG_PATH", tmp_path / "home.json")
        (tmp_path / "home.json").write_text("{}", encoding="utf-8")
        assert find_config_file(None) == tmp_path / "home.json"

    def test_falls_back_to_bundled(self, tmp_path, monkeypatch, logger, caplog):
        monkeypatch.setattr(bi_sync, "USER_CONFIG_PATH", tmp_path / "home.json")
        with caplog.at_level(logging.WARNING, logger="tests.bi_sync"):
            assert find_config_file(None, logger) == bi_sync.BUNDLED_CONFIG_PATH
        assert "home.json" in caplog.text

    def test_installed_copy_without_config_explains(self, tmp_path, monkeypatch):
        monkeypatch.setattr(bi_sync, "USER_CONFIG_PATH", tmp_path / "home.json")
        monkeypatch.setattr(bi_sync, "BUNDLED_CONFIG_PATH", tmp_path / "site-packages" / "config.json")

        with pytest.raises(ValueError, match="home.json or pass --config"):
            find_config_file(None)

    def test_build_effective_config(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        path = tmp_path / "cfg.json"
        path.write_text(json.dumps({"syncs": [{"from": "./a", "to": "./b"}]}), encoding="utf-8")

        cfg = build_effective_config(parse_args(["--config", str(path), "--lock-cooldown", "2.5"]))

        assert cfg.config_path == path
        assert cfg.pairs[0].source == (tmp_path / "a").resolve()
        assert cfg.lock_cooldown_sec == 2.5
        assert cfg.reconcile_interval_sec == bi_sync.RECONCILE_INTERVAL_SEC
        assert cfg.leg_b_delay_sec == bi_sync.LEG_B_DELAY_SEC


class TestPreparePairs:
    def test_creates_missing_roots_by_kind(self, tmp_path, logger):
        pairs = [
            SyncPair(tmp_path / "src", tmp_path / "dst", (), KIND_DIR),
            SyncPair(tmp_path / "f" / "a.txt", tmp_path / "g" / "b.txt", (), KIND_FILE),
        ]
        prepare_pairs(pairs, logger)

        assert (tmp_path / "src").is_dir()
        assert (tmp_path / "dst").is_dir()
        assert (tmp_path / "f" / "a.txt").is_file()
        assert (tmp_path / "g" / "b.txt").is_file()

    def test_existing_roots_untouched(self, tmp_path, logger):
        f = tmp_path / "a.txt"
        f.write_text("keep", encoding="utf-8")
        prepare_pairs([SyncPair(f, tmp_path / "b.txt", (), KIND_FILE)], logger)
        assert f.read_text(encoding="utf-8") == "keep"


class TestLogging:
    def test_colorizes_action_and_path(self, logger):
        fmt = ColorizingFormatter(use_color=True, fmt="%(message)s")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "COPY | /a -> /b", None, None)
        record.action = "COPY"
        record.path_text = "/b"
        record.is_dir = True

        out = fmt.format(record)

        assert f"{Ansi.GREEN}COPY{Ansi.RESET}" in out
        assert f"{Ansi.LIGHT_BROWN}/b{Ansi.RESET}" in out

    def test_plain_without_color(self):
        fmt = ColorizingFormatter(use_color=False, fmt="%(message)s")
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "COPY_FAIL | boom", None, None)
        assert fmt.format(record) == "COPY_FAIL | boom"

    def test_log_action_tags_record(self, logger, caplog):
        with caplog.at_level(logging.INFO, logger="tests.bi_sync"):
            log_action(logger, "SKIP", "source missing: /x", path=Path("/x"), is_dir=False)

        [record] = caplog.records
        assert record.getMessage() == "SKIP | source missing: /x"
        assert record.action == "SKIP"
        assert record.path_text == "/x"

    def test_main_reports_config_error(self, tmp_path):
        log_dir = tmp_path / "logs"
        rc = bi_sync.main(["--config", str(tmp_path / "missing.json"), "--log-dir", str(log_dir)])

        assert rc == 2
        assert list(log_dir.glob("bi_sync_*.log"))
