"""Utility functions for Hellfire."""

import os
import socket
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, Tuple


def sudo_owner() -> Optional[Tuple[int, int]]:
    """(uid, gid) of the account behind sudo, or None when not under sudo."""
    uid = os.environ.get("SUDO_UID")
    gid = os.environ.get("SUDO_GID")
    if not (uid and gid):
        return None
    return int(uid), int(gid)


@contextmanager
def drop_privileges() -> Iterator[None]:
    """
    Create files as the invoking user while running under sudo.

    Stress runs need root for turbostat and smartctl, but sensor logs
    should stay readable and deletable by whoever started the run.
    Outside sudo, or when not root, this does nothing.
    """
    owner = sudo_owner()
    if owner is None or os.geteuid() != 0:
        yield
        return

    root_uid, root_gid = os.geteuid(), os.getegid()
    uid, gid = owner
    try:
        # gid must change while still root
        os.setegid(gid)
        os.seteuid(uid)
        yield
    finally:
        os.seteuid(root_uid)
        os.setegid(root_gid)


def hostname() -> str:
    return socket.gethostname().split(".")[0] or "localhost"


def run_timestamp(now: Optional[datetime] = None) -> str:
    """Timestamp used in log file names (2025-01-31-23-59-59)."""
    return (now or datetime.now()).strftime("%Y-%m-%d-%H-%M-%S")
