# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubeha/execution/ssh.py

from __future__ import annotations

import logging
import socket
import threading
import time
from typing import Callable, Dict, List, Mapping, Tuple

import paramiko

from kubeha.errors import LogicalError, TransientError
from kubeha.inventory.models import Node
from .models import Command, ExecResult

log = logging.getLogger("kubeha")

_CHUNK = 32768


def _load_pkey(path: str):
    for key_cls in (
        paramiko.Ed25519Key,
        paramiko.RSAKey,
        paramiko.ECDSAKey,
    ):
        try:
            return key_cls.from_private_key_file(path)
        except paramiko.SSHException:
            continue
        except OSError as e:
            raise LogicalError(f"cannot read private key {path}: {e}", exit_code=-1) from e
    raise LogicalError(f"unsupported private key format: {path}", exit_code=-1)


class SshExecutor:
    """
    paramiko transport. Keeps one client per node, opened on first use.

    Each command is bounded by its whole-run ``timeout``, not by the gap
    between reads, so a command that keeps printing still times out.
    """

    def __init__(
        self,
        nodes: Mapping[str, Node],
        *,
        connect_timeout: float = 20.0,
        poll_interval: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._nodes = dict(nodes)
        self.connect_timeout = connect_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clients: Dict[str, paramiko.SSHClient] = {}
        self._connecting: Dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def _connect(self, node: Node) -> paramiko.SSHClient:
        pkey = _load_pkey(str(node.pkey_path)) if node.pkey_path else None

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=node.address,
                port=node.port,
                username=node.username,
                pkey=pkey,
                timeout=self.connect_timeout,
                allow_agent=pkey is None,
                look_for_keys=pkey is None,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise LogicalError(
                f"{node.address}: authentication failed for {node.username}: {e}", exit_code=-1
            ) from e
        except BaseException:
            client.close()
            raise
        return client

    def _client(self, address: str) -> paramiko.SSHClient:
        # the shared lock only guards the maps; handshakes hold a per-node lock
        with self._lock:
            client = self._clients.get(address)
            if client is not None:
                return client
            connecting = self._connecting.setdefault(address, threading.Lock())

        with connecting:
            with self._lock:
                client = self._clients.get(address)
            if client is not None:
                return client
            client = self._connect(self._nodes[address])
            with self._lock:
                self._clients[address] = client
            return client

    def _drop(self, address: str) -> None:
        with self._lock:
            client = self._clients.pop(address, None)
        if client is not None:
            client.close()

    def _drain(self, address: str, channel, timeout: float) -> Tuple[bytes, bytes]:
        deadline = time.monotonic() + timeout
        out: List[bytes] = []
        err: List[bytes] = []
        while True:
            if time.monotonic() >= deadline:
                channel.close()
                raise TransientError(f"{address}: command timed out after {timeout}s")
            progressed = False
            if channel.recv_ready():
                out.append(channel.recv(_CHUNK))
                progressed = True
            if channel.recv_stderr_ready():
                err.append(channel.recv_stderr(_CHUNK))
                progressed = True
            if progressed:
                continue
            if channel.exit_status_ready():
                return b"".join(out), b"".join(err)
            self._sleep(self.poll_interval)

    def execute(self, address: str, command: Command, timeout: float) -> ExecResult:
        log.debug("[%s] $ %s", address, command.describe())
        try:
            client = self._client(address)
            stdin, stdout, _ = client.exec_command(command.render(), timeout=timeout)
            channel = stdout.channel
            if command.stdin is not None:
                stdin.write(command.stdin)
            channel.shutdown_write()
            out, err = self._drain(address, channel, timeout)
            rc = channel.recv_exit_status()
        except (socket.timeout, TimeoutError) as e:
            self._drop(address)
            raise TransientError(f"{address}: command timed out after {timeout}s") from e
        except (paramiko.SSHException, OSError, EOFError) as e:
            self._drop(address)
            raise TransientError(f"{address}: ssh failure: {e}") from e
        return ExecResult(
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
            exit_code=rc,
        )

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()
