"""
OS process helpers built on psutil.

llama-server may have been started outside the supervisor (by hand, or by a
previous supervisor that crashed). These helpers find such processes by
listening port or by command line and kill them.
"""

import os
import logging
from typing import List

import psutil


logger = logging.getLogger(__name__)


def pids_listening_on(port: int) -> List[int]:
    """PIDs with a socket listening on the given TCP port."""
    pids = set()
    try:
        connections = psutil.net_connections(kind="tcp")
    except psutil.AccessDenied as e:
        logger.debug(f"Cannot list connections: {e}")
        return []

    for conn in connections:
        if conn.pid and conn.laddr and conn.laddr.port == port and conn.status == psutil.CONN_LISTEN:
            pids.add(conn.pid)

    pids.discard(os.getpid())
    return sorted(pids)


def kill_pids(pids: List[int]) -> int:
    killed = 0
    for pid in pids:
        try:
            psutil.Process(pid).kill()
            killed += 1
        except psutil.NoSuchProcess:
            continue
        except psutil.AccessDenied as e:
            logger.warning(f"Not allowed to kill PID {pid}: {e}")
    return killed


def kill_port_owner(port: int) -> int:
    """Kill whatever listens on a port. Returns the number of killed processes."""
    killed = kill_pids(pids_listening_on(port))
    if killed:
        logger.info(f"Killed {killed} process(es) listening on port {port}")
    return killed


def kill_processes_matching(fragment: str) -> int:
    """Kill processes whose name or command line contains `fragment`."""
    own_pid = os.getpid()
    pids = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        info = proc.info
        if info["pid"] == own_pid:
            continue
        cmdline = " ".join(info.get("cmdline") or [])
        if fragment in (info.get("name") or "") or fragment in cmdline:
            pids.append(info["pid"])

    killed = kill_pids(pids)
    if killed:
        logger.info(f"Killed {killed} process(es) matching '{fragment}'")
    return killed
