"""Catalogers: discover which files must move and build a TransferBatch.

:func:`catalog_local_files` walks the local input tree for the outbound
phase; :func:`catalog_remote_files` lists the remote results tree for the
inbound phase.  Both skip desktop metadata and shadow files and both emit
records whose ``dest_path`` is a complete, self-sufficient target.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path, PurePosixPath

from tractorbeam.connection import ConnectionDescriptor
from tractorbeam.errors import ConfigurationError, RemoteListingError, TransferCancelledError
from tractorbeam.transfer import TransferBatch, TransferRecord
from tractorbeam.transport import Transport
from tractorbeam.utils.path_helpers import (
    interpolate_remote,
    is_excluded,
    normalize_local_path,
    posix_join,
    to_posix_relative,
)

logger = logging.getLogger(__name__)


def catalog_local_files(root: str | os.PathLike[str], remote_root: str) -> TransferBatch:
    """Build an outbound batch for every regular file strictly beneath *root*.

    Args:
        root: Local input directory.
        remote_root: Remote working directory the tree is mirrored into.

    Raises:
        ConfigurationError: If *root* does not exist or is not a directory.
    """
    root_path = normalize_local_path(root)
    if not root_path.is_dir():
        raise ConfigurationError(f"Input directory does not exist: {root_path}")

    records: list[TransferRecord] = []
    for dirpath, dirnames, filenames in os.walk(root_path):
        dirnames.sort()
        for name in sorted(filenames):
            if is_excluded(name):
                logger.debug("Skipping metadata file %s", Path(dirpath) / name)
                continue
            local_path = Path(dirpath) / name
            if not local_path.is_file():
                continue
            rel = to_posix_relative(local_path, root_path)
            records.append(
                TransferRecord(
                    source_path=str(local_path),
                    dest_path=posix_join(remote_root, rel),
                )
            )

    logger.info("Cataloged %d local file(s) under %s", len(records), root_path)
    return TransferBatch(records)


def parse_listing(output: str) -> list[str]:
    """Turn ``find . -type f`` output into clean relative POSIX paths.

    Blank lines and metadata/shadow files are dropped and the leading ``./``
    is stripped.  Other whitespace belongs to the file name and is kept.
    """
    paths: list[str] = []
    for line in output.split("\n"):
        line = line.rstrip("\r")
        if not line.strip():
            continue
        while line.startswith("./"):
            line = line[2:]
        if not line or line == "." or is_excluded(line):
            continue
        paths.append(line)
    return paths


def catalog_remote_files(
    connection: ConnectionDescriptor,
    transport: Transport,
    remote_results_dir: str,
    local_results_dir: str | os.PathLike[str],
    cancel_event: threading.Event | None = None,
) -> TransferBatch:
    """Build an inbound batch for every regular file under *remote_results_dir*.

    A relative *remote_results_dir* is resolved against the connection's
    remote working directory.

    Raises:
        RemoteListingError: If the session cannot be opened or ``find`` fails.
    """
    remote_dir = posix_join(connection.remote_root, remote_results_dir)
    local_root = normalize_local_path(local_results_dir)

    try:
        stdout, stderr, exit_code = transport.list_remote(connection, remote_dir, cancel_event)
    except TransferCancelledError:
        raise
    except Exception as exc:
        raise RemoteListingError(f"Could not list {remote_dir} on {connection.address}: {exc}") from exc

    if exit_code != 0:
        raise RemoteListingError(
            f"Listing {remote_dir} on {connection.address} exited {exit_code}: {stderr.strip()}",
            exit_code=exit_code,
            stderr=stderr,
        )

    records = [
        TransferRecord(
            source_path=interpolate_remote(connection.username, connection.address, posix_join(remote_dir, rel)),
            dest_path=str(local_root.joinpath(*PurePosixPath(rel).parts)),
        )
        for rel in parse_listing(stdout)
    ]
    logger.info("Cataloged %d remote file(s) under %s", len(records), remote_dir)
    return TransferBatch(records)
