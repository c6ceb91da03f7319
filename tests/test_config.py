from config.settings import CONFIG, FetchConfig, HttpConfig
from config.settings_utils import _safe_dataclass_from_dict


def test_defaults_match_selection_thresholds() -> None:
    cfg = FetchConfig()

    assert cfg.api_page_size == 1000
    assert cfg.incremental_call_threshold == 10
    assert cfg.bulk_min_covered_days == 28
    assert cfg.agg_trades_bulk_min_days == 3
    assert cfg.restart_poll_s == 0.1
    assert cfg.allow_small_candle_fetch is True
    assert HttpConfig().csv_batch_rows == 10_000


def test_safe_dataclass_bool_parses_strings() -> None:
    cfg = FetchConfig()

    warnings = _safe_dataclass_from_dict(cfg, {"allow_small_candle_fetch": "no"})

    assert warnings == []
    assert cfg.allow_small_candle_fetch is False


def test_safe_dataclass_bool_rejects_unknown_string() -> None:
    cfg = FetchConfig()

    warnings = _safe_dataclass_from_dict(cfg, {"allow_small_candle_fetch": "maybe"})

    assert cfg.allow_small_candle_fetch is True
    assert "Bad value for bool field 'allow_small_candle_fetch'" in warnings[0]


def test_safe_dataclass_numbers_and_unknown_keys() -> None:
    cfg = FetchConfig()

    warnings = _safe_dataclass_from_dict(
        cfg,
        {"restart_timeout_s": "12.5", "api_page_size": 500.0, "page_delay_s": "fast", "nope": 1},
    )

    assert cfg.restart_timeout_s == 12.5
    assert cfg.api_page_size == 500
    assert isinstance(cfg.api_page_size, int)
    assert cfg.page_delay_s == 0.1
    assert any("page_delay_s" in w for w in warnings)
    assert any("Unknown field 'nope'" in w for w in warnings)


def test_ensure_dirs_creates_data_and_log_dirs(tmp_path, monkeypatch) -> None:
    monkeypatch.setattr(CONFIG, "_data_dir_cached", tmp_path / "data")
    monkeypatch.setattr(CONFIG, "_log_dir_cached", tmp_path / "logs")

    CONFIG.ensure_dirs()

    assert (tmp_path / "data").is_dir()
    assert (tmp_path / "logs").is_dir()


def test_env_overrides_apply_on_reload(monkeypatch) -> None:
    monkeypatch.setenv("HISTFETCH_RESTART_TIMEOUT_S", "2.5")
    monkeypatch.setenv("HISTFETCH_CALL_THRESHOLD", "20")
    monkeypatch.setenv("HISTFETCH_ALLOW_SMALL_CANDLE_FETCH", "false")
    try:
        CONFIG.reload()
        assert CONFIG.fetch.restart_timeout_s == 2.5
        assert CONFIG.fetch.incremental_call_threshold == 20
        assert CONFIG.fetch.allow_small_candle_fetch is False
    finally:
        monkeypatch.delenv("HISTFETCH_RESTART_TIMEOUT_S", raising=False)
        monkeypatch.delenv("HISTFETCH_CALL_THRESHOLD", raising=False)
        monkeypatch.delenv("HISTFETCH_ALLOW_SMALL_CANDLE_FETCH", raising=False)
        CONFIG.reload()

    assert CONFIG.fetch.restart_timeout_s == 30.0


def test_invalid_env_value_does_not_override(monkeypatch) -> None:
    monkeypatch.setenv("HISTFETCH_ALLOW_SMALL_CANDLE_FETCH", "maybe")
    monkeypatch.setenv("HISTFETCH_API_PAGE_SIZE", "lots")
    try:
        CONFIG.reload()
        assert CONFIG.fetch.allow_small_candle_fetch is True
        assert CONFIG.fetch.api_page_size == 1000
    finally:
        monkeypatch.delenv("HISTFETCH_ALLOW_SMALL_CANDLE_FETCH", raising=False)
        monkeypatch.delenv("HISTFETCH_API_PAGE_SIZE", raising=False)
        CONFIG.reload()


def test_invalid_values_are_clamped_with_warnings(monkeypatch) -> None:
    monkeypatch.setenv("HISTFETCH_RESTART_POLL_S", "-1")
    monkeypatch.setenv("HISTFETCH_PAGE_DELAY_S", "-3")
    try:
        CONFIG.reload()
        assert CONFIG.fetch.restart_poll_s == 0.1
        assert CONFIG.fetch.page_delay_s == 0.0
        assert any("restart_poll_s" in w for w in CONFIG.validation_warnings)
    finally:
        monkeypatch.delenv("HISTFETCH_RESTART_POLL_S", raising=False)
        monkeypatch.delenv("HISTFETCH_PAGE_DELAY_S", raising=False)
        CONFIG.reload()


def test_db_path_lives_in_data_dir() -> None:
    assert CONFIG.db_path.parent == CONFIG.data_dir
    assert CONFIG.db_path.name == CONFIG.storage.db_filename
