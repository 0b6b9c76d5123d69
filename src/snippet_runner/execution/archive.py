from __future__ import annotations

import io
import tarfile
import time

from ..errors import PackagingError

DEFAULT_FILENAME = "main.go"
DEFAULT_MODE = 0o644


def build_source_archive(
    source_text: str,
    *,
    filename: str = DEFAULT_FILENAME,
    mode: int = DEFAULT_MODE,
) -> bytes:
    """Pack source text into an in-memory tar holding exactly one file.

    The entry's declared size is the UTF-8 byte length of `source_text`;
    empty text produces a zero-length file.

    Example:
        ```python
        archive = build_source_archive("package main", filename="main.go", mode=0o644)
        ```
    """
    try:
        payload = source_text.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise PackagingError(f"source is not valid UTF-8 text: {exc.reason}") from exc
    info = tarfile.TarInfo(name=filename)
    info.size = len(payload)
    info.mode = mode
    info.mtime = int(time.time())
    info.type = tarfile.REGTYPE

    buffer = io.BytesIO()
    try:
        with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
            tar.addfile(info, io.BytesIO(payload))
    except (tarfile.TarError, OSError, ValueError) as exc:
        raise PackagingError(str(exc)) from exc
    return buffer.getvalue()
