"""
Tests for the key-value store.
"""

import db


class TestKeyValueStore:
    def test_absent_key(self, store):
        assert store.get("nothing") is None
        assert store.get_json("nothing", default=[]) == []

    def test_set_overwrites(self, store):
        store.set("k", b"one")
        store.set("k", b"two")
        assert store.get("k") == b"two"

    def test_json_roundtrip_keeps_arabic(self, store):
        store.set_json("k", [{"aya": "بسم الله"}])
        assert store.get_json("k") == [{"aya": "بسم الله"}]
        assert "بسم".encode("utf-8") in store.get("k")

    def test_invalid_json_returns_default(self, store):
        store.set("k", b"\xff\xfe not json")
        assert store.get_json("k", default={"fallback": True}) == {"fallback": True}

    def test_values_survive_reopen(self, tmp_path):
        path = str(tmp_path / "store.db")
        first = db.KeyValueStore.open(path)
        first.set("k", b"v")
        first.close()

        second = db.KeyValueStore.open(path)
        try:
            assert second.get("k") == b"v"
        finally:
            second.close()


class TestUserId:
    def test_generated_once(self, store):
        uid = db.load_or_create_user_id(store)
        assert uid
        assert db.load_or_create_user_id(store) == uid
        assert store.get(db.USER_ID_KEY) == uid.encode("utf-8")

    def test_existing_id_is_kept(self, store):
        store.set(db.USER_ID_KEY, b"user-42")
        assert db.load_or_create_user_id(store) == "user-42"
