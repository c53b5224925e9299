import pytest

from budgetbuddy.core.settings import get_env_float, get_env_int, load_sync_config, mask_value, read_config_file

COMDIRECT_ENV = {
    "COMDIRECT_CLIENT_ID": "client",
    "COMDIRECT_CLIENT_SECRET": "secret",
    "COMDIRECT_USERNAME": "user",
    "COMDIRECT_PASSWORD": "pin",
}


def test_get_env_int_bounds(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SYNC_DAYS_TO_FETCH", "200")
    assert get_env_int("SYNC_DAYS_TO_FETCH", 30, min_value=1, max_value=90) == 30
    monkeypatch.setenv("SYNC_DAYS_TO_FETCH", "abc")
    assert get_env_int("SYNC_DAYS_TO_FETCH", 30) == 30
    monkeypatch.setenv("SYNC_DAYS_TO_FETCH", "14")
    assert get_env_int("SYNC_DAYS_TO_FETCH", 30, min_value=1, max_value=90) == 14


def test_get_env_float_invalid(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("IMPORT_CALL_TIMEOUT", "soon")
    assert get_env_float("IMPORT_CALL_TIMEOUT", 30.0) == 30.0


def test_load_sync_config(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in COMDIRECT_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("YNAB_BUDGET_ID", "budget-1")
    monkeypatch.setenv("YNAB_ACCOUNT_ID", "")
    monkeypatch.setenv("SYNC_DAYS_TO_FETCH", "7")

    config = load_sync_config()

    assert config.credentials.username == "user"
    assert config.budget_id == "budget-1"
    assert config.budget_account_id is None
    assert config.days_to_fetch == 7
    assert "pin" not in repr(config.credentials)


def test_incomplete_credentials_are_dropped(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in COMDIRECT_ENV.items():
        monkeypatch.setenv(key, value)
    monkeypatch.delenv("COMDIRECT_PASSWORD")
    assert load_sync_config().credentials is None


def test_mask_value() -> None:
    assert mask_value("YNAB_TOKEN", "abcdefgh") == "ab...gh"
    assert mask_value("COMDIRECT_PASSWORD", "123") == "****"
    assert mask_value("YNAB_BUDGET_ID", "budget-1") == "budget-1"


def test_read_config_file(tmp_path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("# comment\nYNAB_BUDGET_ID: \"budget-1\"\nSYNC_DAYS_TO_FETCH: 14\nEMPTY:\n", encoding="utf-8")

    assert read_config_file(str(path)) == {"YNAB_BUDGET_ID": "budget-1", "SYNC_DAYS_TO_FETCH": "14"}
    assert read_config_file(str(tmp_path / "missing.yaml")) == {}
