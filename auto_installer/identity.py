"""
Stable identity for a downloaded image.

Device, inode, size, rounded mtime and basename together identify one
physical file at rest. Replacing the file at the same path changes the
inode or size/mtime and therefore the key.
"""

import os
from typing import NamedTuple


class ImageIdentity(NamedTuple):
    dev: int
    ino: int
    size: int
    mtime: int
    name: str

    @property
    def key(self) -> str:
        """State store key for this identity."""
        return f"{self.dev}:{self.ino}:{self.size}:{self.mtime}:{self.name}"


def round_mtime(mtime: float) -> int:
    """Round a modification time to whole seconds to absorb sub-second jitter."""
    return int(round(mtime))


def identity_from_stat(st: os.stat_result, path: str) -> ImageIdentity:
    return ImageIdentity(
        dev=st.st_dev,
        ino=st.st_ino,
        size=st.st_size,
        mtime=round_mtime(st.st_mtime),
        name=os.path.basename(path),
    )
