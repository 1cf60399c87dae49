from llm_gateway.core.storage import MemoryStore, YamlFileStore


class TestYamlFileStore:
    def test_values_survive_reopen(self, tmp_path):
        path = str(tmp_path / "nested" / "credentials.yaml")
        store = YamlFileStore(path)
        store.set("credentials:openai", {"provider_id": "openai", "key_version": "v1"})
        store.set("active_provider", "openai")

        reopened = YamlFileStore(path)

        assert reopened.get("active_provider") == "openai"
        assert reopened.get("credentials:openai")["key_version"] == "v1"
        assert reopened.keys("credentials:") == ["credentials:openai"]

    def test_delete(self, tmp_path):
        path = str(tmp_path / "store.yaml")
        store = YamlFileStore(path)
        store.set("a", 1)
        store.delete("a")
        store.delete("missing")

        assert YamlFileStore(path).get("a") is None

    def test_broken_file_starts_empty(self, tmp_path):
        path = tmp_path / "store.yaml"
        path.write_text("a: [unclosed\n")
        assert YamlFileStore(str(path)).keys() == []

    def test_unexpected_layout_is_ignored(self, tmp_path):
        path = tmp_path / "store.yaml"
        path.write_text("- just\n- a list\n")
        assert YamlFileStore(str(path)).get("just", "default") == "default"


def test_memory_store_prefix_listing():
    store = MemoryStore({"credentials:a": 1, "credentials:b": 2, "other": 3})
    assert sorted(store.keys("credentials:")) == ["credentials:a", "credentials:b"]
    assert len(store.keys()) == 3
