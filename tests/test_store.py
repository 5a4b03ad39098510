import tempfile
import threading
import unittest
from pathlib import Path

from autobot.store import FileStore, MemoryStore


class MemoryStoreTests(unittest.TestCase):
    def test_get_missing_and_put(self) -> None:
        store = MemoryStore({"a": "1"})
        self.assertEqual(store.get("a"), "1")
        self.assertIsNone(store.get("b"))
        store.put("b", "2")
        self.assertEqual(store.get("b"), "2")


class FileStoreTests(unittest.TestCase):
    def test_put_replaces_whole_document(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = FileStore(tmp)
            store.put("bot_state", '{"v": 1}')
            store.put("bot_state", '{"v": 2}')
            self.assertEqual(store.get("bot_state"), '{"v": 2}')
            self.assertEqual(sorted(p.name for p in Path(tmp).iterdir()), ["bot_state.json"])

    def test_key_is_sanitized(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            store = FileStore(tmp)
            store.put("../escape", "x")
            self.assertTrue((Path(tmp) / ".._escape.json").exists())
            self.assertEqual(store.get("../escape"), "x")

    def test_lock_serializes_separate_instances(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            FileStore(tmp).put("counter", "0")

            def bump() -> None:
                store = FileStore(tmp)
                for _ in range(25):
                    with store.lock("counter"):
                        value = int(store.get("counter") or "0")
                        store.put("counter", str(value + 1))

            workers = [threading.Thread(target=bump) for _ in range(4)]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join(10)

            self.assertEqual(FileStore(tmp).get("counter"), "100")
            self.assertEqual(sorted(p.name for p in Path(tmp).iterdir()), ["counter.json", "counter.lock"])

    def test_memory_store_lock_is_reusable(self) -> None:
        store = MemoryStore()
        with store.lock("k"):
            store.put("k", "1")
        with store.lock("k"):
            self.assertEqual(store.get("k"), "1")

    def test_empty_file_reads_as_missing(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            (Path(tmp) / "k.json").write_text("  ", encoding="utf-8")
            self.assertIsNone(FileStore(tmp).get("k"))


if __name__ == "__main__":
    unittest.main()
