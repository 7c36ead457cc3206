from __future__ import annotations

import os
from pathlib import Path

from nodule.adapters.tempfile import TempFile
from nodule.kernel.sequence import SequenceGenerator


def test_path_combines_prefix_pid_sequence_and_suffix(tmp_path: Path) -> None:
    node = TempFile(suffix=".img", dir=tmp_path, sequence=SequenceGenerator(start=7))
    assert node.path == tmp_path / f"nodule-{os.getpid()}-7.img"
    assert str(node) == node.file == os.fspath(node)
    assert not node.exists()


def test_default_sequence_never_repeats_names(tmp_path: Path) -> None:
    names = {TempFile(dir=tmp_path).file for _ in range(20)}
    assert len(names) == 20


def test_stop_removes_file_written_by_consumer(tmp_path: Path) -> None:
    node = TempFile(dir=tmp_path)
    node.run()
    node.path.write_bytes(b"scratch")
    assert node.stop() is True
    assert not node.exists()
    assert node.done()


def test_stop_tolerates_never_created_path(tmp_path: Path) -> None:
    node = TempFile(dir=tmp_path)
    node.run()
    assert node.stop() is True


def test_directory_mode_creates_and_removes_tree(tmp_path: Path) -> None:
    node = TempFile(dir=tmp_path, directory=True)
    node.run()
    assert node.path.is_dir()
    (node.path / "nested").mkdir()
    (node.path / "nested" / "file.txt").write_text("x")
    node.force_stop()
    assert not node.exists()
    assert node.describe()["path"] == str(node.path)
