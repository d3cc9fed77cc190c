"""Docker-backed sandbox driven through the docker CLI."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional, Sequence, Tuple

from upletworker.common import ErrorCode
from upletworker.utils.error_classifier import classify_docker_failure
from upletworker.utils.errors import SandboxSetupError, SandboxTimeoutError

from .base import SandboxRun, SandboxRunner

logger = logging.getLogger(__name__)

RUN_LABEL = "upletworker.run"
OWNER_LABEL = "upletworker.owner"
MAX_LOG_CHARS = 64 * 1024


class DockerSandbox(SandboxRunner):
    """One throwaway container per run: no network, read-only rootfs, no capabilities."""

    name = "docker"

    def __init__(
        self,
        image: str,
        docker_binary: str = "docker",
        entrypoint: Sequence[str] = ("python", "/algo/main.py"),
        memory_limit: str = "4g",
        cpus: float = 1.0,
        pids_limit: int = 256,
        tmpfs_size: str = "64m",
        user: Optional[str] = None,
        owner: str = "",
    ):
        super().__init__(entrypoint=entrypoint)
        self.image = image
        self.docker_binary = docker_binary
        self.memory_limit = memory_limit
        self.cpus = cpus
        self.pids_limit = pids_limit
        self.tmpfs_size = tmpfs_size
        self.owner = owner
        # Match the host uid so the container can write the output mount.
        self.user = user or f"{os.getuid()}:{os.getgid()}"

    async def _docker(self, *args: str) -> Tuple[int, str, str]:
        """Run one docker CLI command; kills the client if the caller is cancelled."""
        process = await asyncio.create_subprocess_exec(
            self.docker_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return (
            process.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    def _raise_setup_failure(self, step: str, run: SandboxRun, returncode: int, stderr: str) -> None:
        message = f"docker {step} failed for run {run.run_id} (exit {returncode}): {stderr.strip()}"
        if classify_docker_failure(stderr, returncode) == ErrorCode.TIMEOUT_ERROR:
            raise SandboxTimeoutError(message)
        raise SandboxSetupError(message)

    def create_args(self, run: SandboxRun) -> List[str]:
        args = [
            "create",
            "--name", f"upletworker-{run.run_id}",
            "--label", f"{RUN_LABEL}={run.run_id}",
            "--label", f"{OWNER_LABEL}={self.owner}",
            "--network", "none",
            "--read-only",
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--pids-limit", str(self.pids_limit),
            "--memory", self.memory_limit,
            "--memory-swap", self.memory_limit,
            "--cpus", str(self.cpus),
            "--tmpfs", f"/tmp:rw,noexec,nosuid,size={self.tmpfs_size}",
            "--user", self.user,
        ]
        for mount in run.mounts:
            mode = "ro" if mount.read_only else "rw"
            args.extend(["-v", f"{mount.source}:{mount.target}:{mode}"])
        args.append(self.image)
        args.extend(run.command)
        return args

    async def _create(self, run: SandboxRun) -> None:
        returncode, stdout, stderr = await self._docker(*self.create_args(run))
        if returncode != 0:
            self._raise_setup_failure("create", run, returncode, stderr)
        run.handle = stdout.strip()

    async def _start(self, run: SandboxRun) -> None:
        returncode, _, stderr = await self._docker("start", run.handle)
        if returncode != 0:
            self._raise_setup_failure("start", run, returncode, stderr)

    async def _wait(self, run: SandboxRun) -> int:
        returncode, stdout, stderr = await self._docker("wait", run.handle)
        if returncode != 0:
            raise SandboxSetupError(f"docker wait failed for run {run.run_id}: {stderr.strip()}")
        try:
            return int(stdout.strip().splitlines()[-1])
        except (ValueError, IndexError) as e:
            raise SandboxSetupError(f"docker wait returned {stdout!r} for run {run.run_id}") from e

    async def _collect_logs(self, run: SandboxRun) -> Tuple[str, str]:
        returncode, stdout, stderr = await self._docker("logs", run.handle)
        if returncode != 0:
            logger.warning(f"Cannot read logs of run {run.run_id}: {stderr.strip()}")
            return "", ""
        return stdout[-MAX_LOG_CHARS:], stderr[-MAX_LOG_CHARS:]

    async def _destroy(self, run: SandboxRun) -> None:
        target = run.handle or f"upletworker-{run.run_id}"
        returncode, _, stderr = await self._docker("rm", "-f", target)
        if returncode != 0 and "no such container" not in stderr.lower():
            raise SandboxSetupError(f"docker rm failed for run {run.run_id}: {stderr.strip()}")

    async def health_check(self) -> bool:
        try:
            returncode, stdout, stderr = await self._docker("version", "--format", "{{.Server.Version}}")
        except OSError as e:
            logger.error(f"docker binary {self.docker_binary} unavailable: {e}")
            return False
        if returncode != 0:
            logger.error(f"docker daemon unavailable: {stderr.strip()}")
            return False
        logger.info(f"docker daemon version {stdout.strip()}")
        return True

    async def cleanup_orphans(self) -> int:
        """Remove containers left behind by a previous worker process."""
        returncode, stdout, stderr = await self._docker("ps", "-aq", "--filter", f"label={OWNER_LABEL}={self.owner}")
        if returncode != 0:
            raise SandboxSetupError(f"docker ps failed: {stderr.strip()}")
        container_ids = [c for c in stdout.split() if c]
        if not container_ids:
            return 0
        returncode, _, stderr = await self._docker("rm", "-f", *container_ids)
        if returncode != 0:
            raise SandboxSetupError(f"docker rm of orphans failed: {stderr.strip()}")
        logger.warning(f"Removed {len(container_ids)} orphaned sandbox containers")
        return len(container_ids)
