from __future__ import annotations

import pytest
import yaml
from cryptography.fernet import Fernet

from accounts.models import User
from accounts.users import Users
from common.crypto import FernetEncryptor
from common.errors import BadYamlError, DocumentError, DuplicateNameError, EncryptionError
from store.yaml_store import UserStateStore, load_users, save_users


@pytest.fixture
def key_file(tmp_path):
    path = tmp_path / "pillar.key"
    path.write_bytes(Fernet.generate_key())
    return path


@pytest.fixture
def store(tmp_path, key_file):
    return UserStateStore(
        state_path=tmp_path / "salt" / "users.sls",
        pillar_path=tmp_path / "pillar" / "users.sls",
        key_path=key_file,
    )


def _two_users() -> Users:
    return Users(
        [
            User(
                name="one",
                uid=2001,
                gecos_fullname="The first user",
                password_plain="secret1",
                groups=["wheel"],
            ),
            User(
                name="two",
                present=False,
                force=True,
                shell="/bin/sh",
                gecos_fullname="The second user",
                password_plain="secret2",
            ),
        ]
    )


def _without_password(user: User) -> dict:
    return user.model_dump(exclude={"password_plain"})


def test_save_then_load_roundtrip(store, key_file):
    users = _two_users()
    store.save(users)

    restored = store.load()
    assert sorted(u.name for u in restored) == ["one", "two"]
    for user in users:
        got = restored.get(user.name)
        assert got is not None
        assert _without_password(got) == _without_password(user)

    enc = FernetEncryptor.from_key_file(key_file)
    assert enc.decrypt(restored.get("one").password_plain) == "secret1"
    assert enc.decrypt(restored.get("two").password_plain) == "secret2"


def test_saved_files_hold_expected_documents(store):
    users = _two_users()
    store.save(users)

    state = yaml.safe_load(store.state_path.read_text(encoding="utf-8"))
    assert state == users.to_state_document()
    assert "saltui-users-one" in state
    assert state["saltui-users-two"] == {"user.absent": [{"name": "two"}, {"force": True}]}

    pillar_text = store.pillar_path.read_text(encoding="utf-8")
    assert "secret1" not in pillar_text
    assert "secret2" not in pillar_text
    assert "secret1" not in store.state_path.read_text(encoding="utf-8")
    pillar = yaml.safe_load(pillar_text)
    assert list(pillar["users"]) == ["one", "two"]
    assert pillar["users"]["two"]["shell"] == "/bin/sh"


def test_save_is_block_style_without_wrapping(store):
    long_name = "x" * 300
    store.save(Users([User(name="long", gecos_fullname=long_name)]))

    text = store.pillar_path.read_text(encoding="utf-8")
    assert f"    fullname: {long_name}\n" in text
    assert "{" not in text


def test_save_truncates_existing_files(store):
    store.save(_two_users())
    store.save(Users([User(name="solo")]))

    assert list(yaml.safe_load(store.state_path.read_text(encoding="utf-8"))) == ["saltui-users-solo"]
    assert list(store.load().all()) == [User(name="solo")]


def test_load_then_save_keeps_single_encryption(store, key_file):
    store.save(_two_users())
    first = store.load()
    token = first.get("one").password_plain
    store.save(first)

    reloaded = store.load()
    assert reloaded.get("one").password_plain == token
    enc = FernetEncryptor.from_key_file(key_file)
    assert enc.decrypt(reloaded.get("one").password_plain) == "secret1"


def test_changed_password_after_load_is_encrypted(store, key_file):
    store.save(_two_users())
    users = store.load()
    users.get("one").password_plain = "rotated"
    store.save(users)

    stored = store.load().get("one").password_plain
    assert stored != "rotated"
    enc = FernetEncryptor.from_key_file(key_file)
    assert enc.decrypt(stored) == "rotated"


def test_load_empty_file_and_missing_users_key(tmp_path):
    empty = tmp_path / "empty.sls"
    empty.write_text("", encoding="utf-8")
    assert len(load_users(empty)) == 0

    other = tmp_path / "other.sls"
    other.write_text("groups:\n  wheel: {}\n", encoding="utf-8")
    assert len(load_users(other)) == 0


@pytest.mark.parametrize(
    "text,key",
    [
        ("users: [alice, bob]\n", "users"),
        ("users:\n", "users"),
        ("users:\n  bob: just-a-string\n", "bob"),
        ("users:\n  bob:\n    name: bob\n    uid: 'abc'\n", "users:bob:uid"),
        ("users:\n  bob:\n    name: bob\n    colour: blue\n", "users:bob:colour"),
        ("users:\n  bob:\n    uid: 1\n", "users:bob:name"),
        ("users:\n  bob:\n    name: robert\n", "users:bob:name"),
    ],
)
def test_load_malformed_pillar_names_document_and_key(tmp_path, text, key):
    path = tmp_path / "bad.sls"
    path.write_text(text, encoding="utf-8")

    with pytest.raises(BadYamlError) as exc:
        load_users(path)
    assert exc.value.key == key
    assert exc.value.path == path
    assert str(path) in str(exc.value)


def test_load_top_level_not_mapping(tmp_path):
    path = tmp_path / "list.sls"
    path.write_text("- alice\n- bob\n", encoding="utf-8")
    with pytest.raises(BadYamlError):
        load_users(path)


def test_load_unparsable_yaml(tmp_path):
    path = tmp_path / "broken.sls"
    path.write_text("users: [unclosed\n", encoding="utf-8")
    with pytest.raises(BadYamlError) as exc:
        load_users(path)
    assert isinstance(exc.value.__cause__, yaml.YAMLError)


def test_load_missing_file(tmp_path):
    with pytest.raises(DocumentError) as exc:
        load_users(tmp_path / "nope.sls")
    assert not isinstance(exc.value, BadYamlError)
    assert exc.value.path == tmp_path / "nope.sls"


def test_load_duplicate_name_is_not_overwritten(tmp_path):
    path = tmp_path / "dup.sls"
    path.write_text(
        "users:\n"
        "  1:\n"
        "    name: '1'\n"
        "  '1':\n"
        "    name: '1'\n",
        encoding="utf-8",
    )
    with pytest.raises(DuplicateNameError):
        load_users(path)


def test_save_with_bad_key_writes_nothing(tmp_path):
    state_path = tmp_path / "state.sls"
    pillar_path = tmp_path / "pillar.sls"
    with pytest.raises(EncryptionError):
        save_users(
            _two_users(),
            state_path=state_path,
            pillar_path=pillar_path,
            key_path=tmp_path / "missing.key",
        )
    assert not state_path.exists()
    assert not pillar_path.exists()


def test_state_write_failure_still_writes_pillar(tmp_path, key_file):
    state_path = tmp_path / "state_dir"
    state_path.mkdir()
    pillar_path = tmp_path / "pillar.sls"

    with pytest.raises(DocumentError) as exc:
        save_users(_two_users(), state_path=state_path, pillar_path=pillar_path, key_path=key_file)
    assert exc.value.path == state_path
    assert sorted(u.name for u in load_users(pillar_path)) == ["one", "two"]


def test_pillar_write_failure_still_writes_state(tmp_path, key_file):
    state_path = tmp_path / "state.sls"
    pillar_path = tmp_path / "pillar_dir"
    pillar_path.mkdir()

    with pytest.raises(DocumentError) as exc:
        save_users(_two_users(), state_path=state_path, pillar_path=pillar_path, key_path=key_file)
    assert exc.value.path == pillar_path
    assert "saltui-users-one" in yaml.safe_load(state_path.read_text(encoding="utf-8"))


def test_both_writes_failing_reports_both(tmp_path, key_file):
    state_path = tmp_path / "state_dir"
    pillar_path = tmp_path / "pillar_dir"
    state_path.mkdir()
    pillar_path.mkdir()

    with pytest.raises(DocumentError) as exc:
        save_users(_two_users(), state_path=state_path, pillar_path=pillar_path, key_path=key_file)
    assert [e.path for e in exc.value.errors] == [state_path, pillar_path]


def test_custom_state_prefix(tmp_path, key_file):
    state_path = tmp_path / "state.sls"
    save_users(
        Users([User(name="alice")]),
        state_path=state_path,
        pillar_path=tmp_path / "pillar.sls",
        key_path=key_file,
        state_prefix="site",
    )
    assert list(yaml.safe_load(state_path.read_text(encoding="utf-8"))) == ["site-alice"]


def test_from_env_missing_vars_raises(monkeypatch):
    for name in ("SALTUI_STATE_PATH", "SALTUI_PILLAR_PATH", "SALTUI_KEY_PATH"):
        monkeypatch.delenv(name, raising=False)
    with pytest.raises(RuntimeError) as exc:
        UserStateStore.from_env()
    assert "SALTUI_KEY_PATH" in str(exc.value)


def test_from_env_reads_paths_and_prefix(monkeypatch, tmp_path):
    monkeypatch.setenv("SALTUI_STATE_PATH", str(tmp_path / "s.sls"))
    monkeypatch.setenv("SALTUI_PILLAR_PATH", str(tmp_path / "p.sls"))
    monkeypatch.setenv("SALTUI_KEY_PATH", "")
    monkeypatch.setenv("SALTUI_STATE_PREFIX", "lab")

    with pytest.raises(RuntimeError):
        UserStateStore.from_env()

    store = UserStateStore.from_env(require_key=False)
    assert store.state_path == tmp_path / "s.sls"
    assert store.pillar_path == tmp_path / "p.sls"
    assert store.key_path is None
    assert store.state_prefix == "lab"


def test_load_repeated_user_key_raises_duplicate_name(tmp_path):
    path = tmp_path / "dup.sls"
    path.write_text(
        "users:\n"
        "  alice:\n"
        "    name: alice\n"
        "    uid: 1\n"
        "  alice:\n"
        "    name: alice\n"
        "    uid: 2\n",
        encoding="utf-8",
    )
    with pytest.raises(DuplicateNameError) as exc:
        load_users(path)
    assert "alice" in str(exc.value)
    assert str(path) in str(exc.value)


def test_load_repeated_field_key_names_key(tmp_path):
    path = tmp_path / "dup_field.sls"
    path.write_text(
        "users:\n"
        "  alice:\n"
        "    name: alice\n"
        "    uid: 1\n"
        "    uid: 2\n",
        encoding="utf-8",
    )
    with pytest.raises(BadYamlError) as exc:
        load_users(path)
    assert exc.value.key == "uid"
    assert exc.value.path == path


def test_load_merge_key_override_is_allowed(tmp_path):
    path = tmp_path / "merge.sls"
    path.write_text(
        "defaults: &defaults\n"
        "  shell: /bin/sh\n"
        "  uid: 1\n"
        "users:\n"
        "  alice:\n"
        "    <<: *defaults\n"
        "    name: alice\n"
        "    uid: 2\n",
        encoding="utf-8",
    )
    alice = load_users(path).get("alice")
    assert alice.uid == 2
    assert alice.shell == "/bin/sh"


def test_load_undecodable_bytes_names_document(tmp_path):
    path = tmp_path / "latin.sls"
    path.write_bytes(b"users:\n  alice:\n    name: alice\n    shell: \xff\xfe\n")
    with pytest.raises(BadYamlError) as exc:
        load_users(path)
    assert exc.value.path == path
    assert str(path) in str(exc.value)
    assert isinstance(exc.value.__cause__, UnicodeDecodeError)
