"""
Writer — atomic file replacement for archives and receipts.

Output layout per platform:
    <output_dir>/<prefix>-<platform>              (retrieved binary)
    <output_dir>/<prefix>-<platform>.tar.gz       (archive)
    <output_dir>/<prefix>-<platform>.receipt.json (receipt)

Readers listing the output directory only ever see a complete file or the
previous version: content is written to a hidden temporary file in the same
directory and moved into place with ``os.replace``.
"""
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator

from fleet_builder.io.schema import BuildReceipt


@contextmanager
def atomic_output(dest: Path) -> Iterator[BinaryIO]:
    """Yield a binary file object whose content replaces *dest* on success."""
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            yield fh
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, dest)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def write_receipt(receipt: BuildReceipt, dest: Path) -> Path:
    """Write *receipt* as pretty JSON, atomically."""
    payload = json.dumps(receipt.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"
    with atomic_output(dest) as fh:
        fh.write(payload.encode("utf-8"))
    return dest
