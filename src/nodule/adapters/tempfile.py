from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path

from nodule.config.settings import HarnessSettings
from nodule.kernel.node import Node
from nodule.kernel.sequence import SequenceGenerator, default_sequence

PREFIX = "nodule-"


class TempFile(Node):
    """Unique scratch path that is removed when the node stops.

    The name is ``nodule-<pid>-<seq><suffix>`` inside ``dir`` (the system
    temp directory by default). Nothing is created on disk unless
    ``directory=True``; plain paths are left for the consumer to write.
    ``str(node)`` is the path, which is what argv substitution sees.
    """

    def __init__(
        self,
        *,
        suffix: str = "",
        dir: str | os.PathLike[str] | None = None,
        directory: bool = False,
        sequence: SequenceGenerator | None = None,
        settings: HarnessSettings | None = None,
        **options: object,
    ) -> None:
        super().__init__(settings=settings, **options)  # type: ignore[arg-type]
        base = Path(dir) if dir is not None else Path(tempfile.gettempdir())
        seq = (sequence or default_sequence).next()
        self.path = base / f"{PREFIX}{os.getpid()}-{seq}{suffix}"
        self.directory = directory

    @property
    def file(self) -> str:
        return str(self.path)

    def run(self) -> None:
        super().run()
        if self.directory:
            self.path.mkdir(parents=True, exist_ok=True)

    def stop(self) -> bool:
        self.remove()
        return super().stop()

    def force_stop(self) -> bool:
        return self.stop()

    def remove(self) -> None:
        # Missing paths are fine: the consumer may never have created the file.
        if self.path.is_dir() and not self.path.is_symlink():
            shutil.rmtree(self.path, ignore_errors=True)
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def exists(self) -> bool:
        return self.path.exists()

    def describe(self) -> dict[str, object]:
        details = super().describe()
        details["path"] = str(self.path)
        return details

    def __str__(self) -> str:
        return str(self.path)

    def __fspath__(self) -> str:
        return str(self.path)
