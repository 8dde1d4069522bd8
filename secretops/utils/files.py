"""File helpers for secret material on disk."""

import os
import stat
from typing import Union


def write_private(path: str, data: Union[str, bytes]) -> str:
    """
    Write ``data`` to ``path`` readable by the owner only.

    The file is created with mode 0600 so the contents are never
    world-readable, even briefly. Parent directories are created.

    Returns:
        str: The path written
    """
    if isinstance(data, str):
        data = data.encode("utf-8")

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    # O_CREAT does not change the mode of an existing file
    os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
    return path
