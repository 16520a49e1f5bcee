import pytest

from meettr.src.keystore import KeyStore


@pytest.fixture
def store(tmp_path):
    return KeyStore(key_file=tmp_path / ".key", data_file=tmp_path / "keys.dat")


def test_keys_are_encrypted_at_rest(store):
    store.add_key("groq", "gsk_secret_value_1234")

    assert b"gsk_secret" not in store.data_file.read_bytes()
    assert store.get_keys("groq") == ["gsk_secret_value_1234"]


def test_add_is_ordered_and_skips_duplicates(store):
    assert store.add_key("groq", "key-one-aaaa")
    assert store.add_key("groq", " key-two-bbbb ")
    assert not store.add_key("groq", "key-one-aaaa")

    assert store.get_keys("groq") == ["key-one-aaaa", "key-two-bbbb"]
    assert store.masked_keys("groq") == ["key-...aaaa", "key-...bbbb"]


def test_store_survives_reopen(store, tmp_path):
    store.add_key("groq", "persisted-key-9999")

    reopened = KeyStore(key_file=tmp_path / ".key", data_file=tmp_path / "keys.dat")

    assert reopened.get_keys("groq") == ["persisted-key-9999"]


def test_remove_by_position(store):
    store.add_key("groq", "first-key-1111")
    store.add_key("groq", "second-key-2222")

    assert store.remove_key("groq", 0) == "firs...1111"
    assert store.get_keys("groq") == ["second-key-2222"]

    store.remove_key("groq", 0)
    assert not store.data_file.exists()
    assert store.get_keys("groq") == []


def test_remove_out_of_range(store):
    with pytest.raises(IndexError):
        store.remove_key("groq", 0)


def test_delete_all(store):
    store.add_key("groq", "some-key-0000")

    store.delete_all()

    assert not store.data_file.exists()
    assert not store.key_file.exists()
