import os
import json
import shutil
import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, Set

from chibi_upload.core.exceptions import AssemblyError

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024
METADATA_FILE = "metadata.json"
ASSEMBLY_MARKER = ".assembling"
PARTIAL_SUFFIX = ".part"


def session_dir(destination: str, session_id: str) -> Path:
    return Path(destination) / f"{session_id}_tmp"


def chunk_path(chunk_dir: Path, chunk_number: int) -> Path:
    return chunk_dir / str(chunk_number)


def received_chunks(chunk_dir: Path) -> Set[int]:
    """Indices of chunks that finished streaming to disk."""
    if not chunk_dir.is_dir():
        return set()
    return {int(entry.name) for entry in chunk_dir.iterdir() if entry.name.isdigit()}


def write_metadata(chunk_dir: Path, metadata: Dict[str, str]) -> None:
    tmp_path = chunk_dir / f"{METADATA_FILE}{PARTIAL_SUFFIX}"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(metadata, f)
    os.replace(tmp_path, chunk_dir / METADATA_FILE)


def read_metadata(chunk_dir: Path) -> Optional[Dict[str, str]]:
    path = chunk_dir / METADATA_FILE
    if not path.exists():
        return None
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def claim_assembly(chunk_dir: Path) -> bool:
    """Create the assembly marker; only the first caller gets True."""
    try:
        fd = os.open(chunk_dir / ASSEMBLY_MARKER, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
    except FileExistsError:
        return False
    os.close(fd)
    return True


def assemble_chunks(final_path: Path, chunk_dir: Path, total_chunks: int) -> int:
    """Join chunk files 1..total_chunks into final_path and drop chunk_dir.

    On failure the partial artifact and the chunk directory are left as they
    are so the session can be inspected.
    """
    logger.info(f"Starting merge of {total_chunks} chunks from {chunk_dir} to {final_path}")
    total_size = 0

    with open(final_path, "wb") as merged:
        for index in range(1, total_chunks + 1):
            path = chunk_path(chunk_dir, index)
            try:
                chunk_file = open(path, "rb")
            except OSError as e:
                logger.error(f"Error reading chunk {path}: {e}")
                raise AssemblyError(f"Error reading chunk {index}", {"path": str(path)}) from e

            with chunk_file:
                before = merged.tell()
                try:
                    shutil.copyfileobj(chunk_file, merged, COPY_BUFFER_SIZE)
                except OSError as e:
                    logger.error(f"Error copying chunk {path}: {e}")
                    raise AssemblyError(f"Error reading chunk {index}", {"path": str(path)}) from e
                written = merged.tell() - before

            if written == 0:
                raise AssemblyError(f"Chunk {index} is empty", {"path": str(path)})
            total_size += written
            logger.debug(f"Chunk {index}/{total_chunks} merged ({written} bytes)")

    logger.info(f"Merge completed: {total_chunks} chunks, {total_size/1024/1024:.2f}MB -> {final_path}")
    remove_tree(chunk_dir)
    return total_size


def remove_tree(path: Path) -> bool:
    if path.exists():
        shutil.rmtree(path)
        return True
    return False


def remove_file(path: Path) -> bool:
    if path.exists():
        os.remove(path)
        return True
    return False


async def assemble_chunks_async(final_path: Path, chunk_dir: Path, total_chunks: int) -> int:
    return await asyncio.to_thread(assemble_chunks, final_path, chunk_dir, total_chunks)


async def cleanup_session(destination: str, session_id: str) -> bool:
    path = session_dir(destination, session_id)
    removed = await asyncio.to_thread(remove_tree, path)
    if removed:
        logger.info(f"Cleanup completed for {path}")
    return removed
