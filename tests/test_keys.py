import stat
from pathlib import Path

from oneshot.keys import remove_private_key, write_private_key


class TestPrivateKey:
    def test_written_owner_read_only(self, tmp_path: Path):
        path = write_private_key(tmp_path / "keys", "oneshot-a1-key", "PEM")

        assert path == tmp_path / "keys" / "oneshot-a1-key.pem"
        assert path.read_text() == "PEM"
        assert stat.S_IMODE(path.stat().st_mode) == 0o400
        assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700

    def test_stale_key_replaced(self, tmp_path: Path):
        write_private_key(tmp_path, "k", "old")
        path = write_private_key(tmp_path, "k", "new")
        assert path.read_text() == "new"

    def test_remove_is_idempotent(self, tmp_path: Path):
        path = write_private_key(tmp_path, "k", "PEM")

        remove_private_key(path)
        remove_private_key(path)

        assert not path.exists()
