from __future__ import annotations

import json
import stat

import pytest

from civil_protection import (
    Config,
    ConfigNotFoundError,
    ConfigStore,
    CorruptConfigError,
    Identity,
    PersistenceError,
    SendmailTransportConfig,
    SmtpTransportConfig,
)
from conftest import ALICE, BOB, CAROL


def test_save_then_load_round_trip(store):
    config = Config(
        identity=ALICE,
        transport=SmtpTransportConfig(password="hunter2", server="mail.example.org", port=465),
        squadmates=[CAROL, BOB, Identity("", "anon@example.com")],
    )

    store.save(config)

    assert store.load() == config
    assert store.load().squadmates == [CAROL, BOB, Identity("", "anon@example.com")]


def test_save_creates_parent_directory(store, config_path):
    assert not config_path.parent.exists()

    store.save(Config(ALICE, SendmailTransportConfig()))

    assert config_path.is_file()


def test_saved_file_is_private(store, config_path):
    store.save(Config(ALICE, SmtpTransportConfig(password="hunter2")))

    mode = stat.S_IMODE(config_path.stat().st_mode)
    assert mode & (stat.S_IRWXG | stat.S_IRWXO) == 0


def test_save_leaves_no_temporary_files(store, config_path):
    store.save(Config(ALICE, SendmailTransportConfig()))
    store.save(Config(ALICE, SendmailTransportConfig(), [BOB]))

    assert [path.name for path in config_path.parent.iterdir()] == ["config.json"]


def test_saved_format(store, config_path):
    store.save(Config(ALICE, SmtpTransportConfig(password="pw"), [BOB]))

    data = json.loads(config_path.read_text(encoding="utf-8"))

    assert data == {
        "version": 1,
        "identity": {"name": "Alice", "email": "alice@example.com"},
        "transport": {"method": "smtp", "password": "pw", "server": None, "port": None},
        "squadmates": [{"name": "Bob", "email": "bob@example.com"}],
    }


def test_sendmail_format_has_no_password(store, config_path):
    store.save(Config(ALICE, SendmailTransportConfig()))

    data = json.loads(config_path.read_text(encoding="utf-8"))

    assert data["transport"] == {"method": "sendmail"}


def test_load_missing(store):
    assert not store.exists()
    with pytest.raises(ConfigNotFoundError):
        store.load()


@pytest.mark.parametrize(
    "content",
    [
        "{not json",
        "[]",
        json.dumps({"identity": ALICE.to_dict(), "transport": {"method": "sendmail"}}),
        json.dumps(
            {
                "identity": ALICE.to_dict(),
                "transport": {"method": "pigeon"},
                "squadmates": [],
            }
        ),
        json.dumps(
            {
                "identity": ALICE.to_dict(),
                "transport": {"method": "smtp"},
                "squadmates": [],
            }
        ),
        json.dumps(
            {
                "identity": {"name": "Alice", "email": "not-an-email"},
                "transport": {"method": "sendmail"},
                "squadmates": [],
            }
        ),
        json.dumps(
            {
                "identity": ALICE.to_dict(),
                "transport": {"method": "sendmail"},
                "squadmates": [BOB.to_dict(), BOB.to_dict()],
            }
        ),
        json.dumps(
            {
                "version": 2,
                "identity": ALICE.to_dict(),
                "transport": {"method": "sendmail"},
                "squadmates": [],
            }
        ),
    ],
)
def test_load_corrupt(store, config_path, content):
    config_path.parent.mkdir(parents=True)
    config_path.write_text(content, encoding="utf-8")

    assert not store.exists()
    with pytest.raises(CorruptConfigError):
        store.load()


def test_corrupt_error_does_not_leak_password(store, config_path):
    config_path.parent.mkdir(parents=True)
    config_path.write_text(
        json.dumps(
            {
                "identity": ALICE.to_dict(),
                "transport": {"method": "smtp", "password": "hunter2", "port": "25"},
                "squadmates": [],
            }
        ),
        encoding="utf-8",
    )

    with pytest.raises(CorruptConfigError) as excinfo:
        store.load()

    assert "hunter2" not in str(excinfo.value)


def test_delete(store):
    store.save(Config(ALICE, SendmailTransportConfig()))

    store.delete()

    assert not store.exists()


def test_delete_missing_file(store):
    store.delete()

    assert not store.exists()


def test_save_into_unwritable_location(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a directory", encoding="utf-8")
    store = ConfigStore(blocker / "config.json")

    with pytest.raises(PersistenceError):
        store.save(Config(ALICE, SendmailTransportConfig()))


def test_default_path_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("CMACM_CONFIG", str(tmp_path / "custom.json"))

    assert ConfigStore().path == tmp_path / "custom.json"


def test_default_path_from_xdg(monkeypatch, tmp_path):
    monkeypatch.delenv("CMACM_CONFIG", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))

    assert ConfigStore.default_path() == tmp_path / "resistance" / "config.json"


def test_default_path_in_home(monkeypatch, tmp_path):
    monkeypatch.delenv("CMACM_CONFIG", raising=False)
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))

    assert ConfigStore.default_path() == tmp_path / ".config" / "resistance" / "config.json"


def test_load_invalid_utf8(store, config_path):
    config_path.parent.mkdir(parents=True)
    config_path.write_bytes(b'{"identity": "\xff\xfe"}')

    assert not store.exists()
    with pytest.raises(CorruptConfigError):
        store.load()


def test_load_name_with_control_characters(store, config_path):
    config_path.parent.mkdir(parents=True)
    config_path.write_text(
        json.dumps(
            {
                "identity": ALICE.to_dict(),
                "transport": {"method": "sendmail"},
                "squadmates": [{"name": "Bob\nBcc: eve@evil.example", "email": "bob@example.com"}],
            }
        ),
        encoding="utf-8",
    )

    with pytest.raises(CorruptConfigError):
        store.load()


@pytest.mark.parametrize("transport", [{"port": 0}, {"port": 65536}, {"server": "mail..example.com"}])
def test_load_invalid_smtp_settings(store, config_path, transport):
    config_path.parent.mkdir(parents=True)
    config_path.write_text(
        json.dumps(
            {
                "identity": ALICE.to_dict(),
                "transport": {"method": "smtp", "password": "pw", **transport},
                "squadmates": [],
            }
        ),
        encoding="utf-8",
    )

    with pytest.raises(CorruptConfigError):
        store.load()
