"""Sun Grid Engine backend driving ``qsub``, ``qstat`` and ``qdel``."""

from __future__ import annotations

import asyncio
import shlex
from pathlib import Path
from typing import Optional, Tuple, Union

from ..constants import DEFAULT_EXECUTION_ROOT
from ..errors import BackendTransportError
from .base import BackendJob, BaseBackend, JobHandle, PollResult, call_directory


class SgeBackend(BaseBackend):
    """Submit calls to an SGE cluster from a shared filesystem root."""

    name = "sge"

    def __init__(
        self, root: Union[str, Path] = DEFAULT_EXECUTION_ROOT, queue: Optional[str] = None
    ) -> None:
        self.root = Path(root).resolve()
        self.queue = queue

    async def _run(self, *argv: str) -> Tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise BackendTransportError(f"Could not run {argv[0]}: {exc}") from exc
        out, err = await process.communicate()
        return process.returncode, out.decode(), err.decode()

    async def submit(self, job: BackendJob) -> JobHandle:
        call_root = call_directory(self.root, job)
        call_root.mkdir(parents=True, exist_ok=True)
        script = call_root / "script"
        rc_file = call_root / "rc"
        script.write_text(
            f"#!/bin/bash\ncd {shlex.quote(str(call_root))}\n{job.command}\n"
            f"echo $? > {shlex.quote(str(rc_file))}\n"
        )
        stdout = call_root / "stdout"
        stderr = call_root / "stderr"

        argv = [
            "qsub",
            "-terse",
            "-N",
            f"loomwork_{job.call_name}",
            "-V",
            "-b",
            "n",
            "-wd",
            str(call_root),
            "-o",
            str(stdout),
            "-e",
            str(stderr),
        ]
        if self.queue:
            argv += ["-q", self.queue]
        argv.append(str(script))

        return_code, out, err = await self._run(*argv)
        if return_code != 0 or not out.strip():
            raise BackendTransportError(f"qsub failed ({return_code}): {err.strip()}")
        job_id = out.strip().split(".")[0]
        return JobHandle(
            job_id=job_id,
            backend=self.name,
            call_root=str(call_root),
            stdout=str(stdout),
            stderr=str(stderr),
        )

    async def poll(self, handle: JobHandle) -> PollResult:
        return_code, _, _ = await self._run("qstat", "-j", handle.job_id)
        if return_code == 0:
            return PollResult.running()
        # qstat forgets finished jobs; the rc file tells how they ended
        rc_file = Path(handle.call_root) / "rc"
        if not rc_file.exists():
            return PollResult.failed()
        try:
            job_rc = int(rc_file.read_text().strip())
        except ValueError as exc:
            raise BackendTransportError(f"Unreadable rc file {rc_file}") from exc
        return PollResult.done(job_rc, handle.stdout, handle.stderr)

    async def kill(self, handle: JobHandle) -> None:
        return_code, _, err = await self._run("qdel", handle.job_id)
        if return_code != 0:
            raise BackendTransportError(f"qdel {handle.job_id} failed: {err.strip()}")
