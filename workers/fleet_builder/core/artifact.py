"""
Artifact helpers — hashing, ELF facts and archive packaging.

Packaging is the only step that touches a file other jobs might be
listing, so the archive is always built beside its final name and moved
into place in one rename.
"""
import hashlib
import logging
import tarfile
from pathlib import Path
from typing import Optional

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile

from fleet_builder.io.schema import ArtifactMeta, ElfMeta, FileMeta
from fleet_builder.io.writer import atomic_output

logger = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"


def hash_file(path: Path) -> str:
    """SHA-256 of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def inspect_elf(path: Path) -> Optional[ElfMeta]:
    """
    Read ELF header facts.  Returns None for non-ELF artifacts
    (Mach-O and PE builds are expected and not an error).
    """
    with open(path, "rb") as f:
        if f.read(4) != ELF_MAGIC:
            return None
        f.seek(0)
        try:
            elf = ELFFile(f)
            build_id = None
            section = elf.get_section_by_name(".note.gnu.build-id")
            if section is not None:
                for note in section.iter_notes():
                    if note["n_type"] == "NT_GNU_BUILD_ID":
                        build_id = note["n_desc"]
            return ElfMeta(
                elf_type=elf.header["e_type"],
                arch=elf.header["e_machine"],
                build_id=build_id,
            )
        except ELFError as e:
            logger.warning(f"ELF inspection failed for {path}: {e}")
            return ElfMeta()


def describe_file(path: Path) -> FileMeta:
    return FileMeta(path=str(path), sha256=hash_file(path), size_bytes=path.stat().st_size)


def describe_artifact(path: Path) -> ArtifactMeta:
    return ArtifactMeta(
        path=str(path),
        sha256=hash_file(path),
        size_bytes=path.stat().st_size,
        elf=inspect_elf(path),
    )


def archive_path_for(artifact: Path) -> Path:
    """``out/app-linux-x86_64`` → ``out/app-linux-x86_64.tar.gz``."""
    return artifact.with_name(f"{artifact.name}.tar.gz")


def package_artifact(artifact: Path, dest: Optional[Path] = None) -> Path:
    """
    Compress *artifact* into a gzip tarball, atomically replacing any
    previous archive at *dest*.  Returns the archive path.
    """
    if not artifact.is_file():
        raise FileNotFoundError(f"Artifact not found: {artifact}")
    dest = dest or archive_path_for(artifact)

    with atomic_output(dest) as fh:
        with tarfile.open(fileobj=fh, mode="w:gz") as tar:
            tar.add(str(artifact), arcname=artifact.name)

    logger.info(f"Archived {artifact.name} -> {dest}")
    return dest
