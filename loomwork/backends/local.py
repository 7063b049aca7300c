"""Local process backend, optionally running each call in a Docker container."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
from pathlib import Path
from typing import Dict, List, Union

from ..constants import DEFAULT_EXECUTION_ROOT
from ..errors import BackendTransportError
from .base import BackendJob, BaseBackend, JobHandle, PollResult, call_directory

logger = logging.getLogger(__name__)


class LocalBackend(BaseBackend):
    """Run calls as ``/bin/bash`` subprocesses of the engine."""

    name = "local"

    def __init__(self, root: Union[str, Path] = DEFAULT_EXECUTION_ROOT) -> None:
        self.root = Path(root).resolve()
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._waiters: Dict[str, asyncio.Future] = {}

    def _container_name(self, job: BackendJob) -> str:
        index = "NA" if job.key.index is None else str(job.key.index)
        return f"loomwork-{job.workflow_id[:8]}-{job.call_name}-{index}-{job.key.attempt}"

    def _argv(self, job: BackendJob, call_root: Path, script: Path) -> List[str]:
        if not job.runtime.docker:
            return ["/bin/bash", str(script)]
        mount = f"{call_root}:{call_root}"
        return [
            "docker",
            "run",
            "--rm",
            "--name",
            self._container_name(job),
            "-v",
            mount,
            "-w",
            str(call_root),
            job.runtime.docker,
            "/bin/bash",
            str(script),
        ]

    async def submit(self, job: BackendJob) -> JobHandle:
        call_root = call_directory(self.root, job)
        call_root.mkdir(parents=True, exist_ok=True)
        script = call_root / "script"
        script.write_text(f"#!/bin/bash\ncd {shlex.quote(str(call_root))}\n{job.command}\n")
        stdout = call_root / "stdout"
        stderr = call_root / "stderr"

        argv = self._argv(job, call_root, script)
        try:
            with open(stdout, "w") as out, open(stderr, "w") as err:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdout=out,
                    stderr=err,
                    cwd=str(call_root),
                    start_new_session=True,
                )
        except OSError as exc:
            raise BackendTransportError(f"Could not start {argv[0]}: {exc}") from exc

        job_id = str(process.pid)
        self._processes[job_id] = process
        self._waiters[job_id] = asyncio.ensure_future(process.wait())
        logger.debug(f"Started {job.key} as pid {job_id} in {call_root}")
        return JobHandle(
            job_id=job_id,
            backend=self.name,
            call_root=str(call_root),
            stdout=str(stdout),
            stderr=str(stderr),
            container=self._container_name(job) if job.runtime.docker else None,
        )

    async def poll(self, handle: JobHandle) -> PollResult:
        waiter = self._waiters.get(handle.job_id)
        if waiter is None:
            raise BackendTransportError(f"Unknown job {handle.job_id}")
        if not waiter.done():
            return PollResult.running()
        return_code = waiter.result()
        del self._waiters[handle.job_id]
        (Path(handle.call_root) / "rc").write_text(f"{return_code}\n")
        self._processes.pop(handle.job_id, None)
        return PollResult.done(return_code, handle.stdout, handle.stderr)

    async def kill(self, handle: JobHandle) -> None:
        process = self._processes.pop(handle.job_id, None)
        if process is None:
            raise BackendTransportError(f"Unknown job {handle.job_id}")
        self._waiters.pop(handle.job_id, None)
        if handle.container:
            stopper = await asyncio.create_subprocess_exec(
                "docker",
                "kill",
                handle.container,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await stopper.wait()
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            logger.debug(f"Process {handle.job_id} already exited")

    async def disconnect(self) -> None:
        for waiter in self._waiters.values():
            if not waiter.done():
                waiter.cancel()
        self._waiters.clear()
