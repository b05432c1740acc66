"""
Temporary host workspace shared by the components of one process.
"""
import os
import shutil
import tempfile
import threading
from typing import List, Optional

from ..logger import logger

TEMP_HOST_VOLUME_ENV = "KILN_TEMP_HOST_VOLUME"


class TempWorkspace:
    """
    Host scratch directory created lazily once per process and passed explicitly to
    every component that stages files (derived image contexts, sync scratch space).

    :param base_dir: Parent directory; the system temp dir when empty.
    :param path: Use an existing directory instead of creating one.
    """
    def __init__(self, base_dir: str = "", path: str = ""):
        self.base_dir = base_dir or tempfile.gettempdir()
        self._path = path
        self._owned = not path
        self._lock = threading.Lock()
        self._children: List[str] = []

    @classmethod
    def from_env(cls, env=None, base_dir: str = "") -> "TempWorkspace":
        """Reuses the workspace of a parent kiln process when its path was exported."""
        env = os.environ if env is None else env
        return cls(base_dir=base_dir, path=env.get(TEMP_HOST_VOLUME_ENV, ""))

    @property
    def path(self) -> str:
        with self._lock:
            if not self._path:
                os.makedirs(self.base_dir, exist_ok=True)
                self._path = tempfile.mkdtemp(prefix="kiln", dir=self.base_dir)
            return self._path

    def mkdtemp(self, prefix: str = "") -> str:
        """Creates a fresh directory inside the workspace."""
        directory = tempfile.mkdtemp(prefix=prefix, dir=self.path)
        with self._lock:
            self._children.append(directory)
        return directory

    def cleanup(self, remove_root: Optional[bool] = None) -> None:
        with self._lock:
            children, self._children = self._children, []
            root = self._path
        for child in children:
            shutil.rmtree(child, ignore_errors=True)
        if remove_root is None:
            remove_root = self._owned
        if remove_root and root:
            logger.debug("Removing temp workspace", path=root)
            shutil.rmtree(root, ignore_errors=True)
            with self._lock:
                self._path = ""
