"""Control surface of the local Ollama service."""

import asyncio
import os
import shutil
import subprocess
from typing import List, Optional

import structlog

logger = structlog.get_logger()


class OllamaControl:
    """Wraps the ``ollama`` CLI."""

    def __init__(self, binary: str = "ollama"):
        self.binary = binary

    def is_installed(self) -> bool:
        return shutil.which(self.binary) is not None

    async def _run(self, *args: str) -> subprocess.CompletedProcess:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return subprocess.CompletedProcess(
            list(args),
            proc.returncode,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )

    async def list_models(self) -> Optional[List[str]]:
        """Names of the locally available models, or None if the server could not be asked."""
        result = await self._run(self.binary, "list")
        if result.returncode != 0:
            logger.warning("ollama list failed", exit_code=result.returncode, stderr=result.stderr.strip())
            return None
        return parse_model_list(result.stdout)

    async def has_model(self, model: str) -> Optional[bool]:
        """Whether ``model`` is available locally. None when that is unknown."""
        names = await self.list_models()
        if names is None:
            return None
        return model in names or f"{model}:latest" in names

    async def pull(self, model: str) -> int:
        """Download ``model``. Progress goes straight to the terminal."""
        logger.info("Pulling model", model=model)
        proc = await asyncio.create_subprocess_exec(self.binary, "pull", model, stdin=subprocess.DEVNULL)
        try:
            return await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise

    async def stop_all(self) -> None:
        """Best-effort stop of any running Ollama instance."""
        name = os.path.basename(self.binary)
        try:
            # exact match, so this process (ollama-relay) is not hit
            result = await self._run("pkill", "-x", name)
        except OSError as e:
            logger.warning("Could not stop existing Ollama instances", error=str(e))
            return
        logger.debug("Stopped existing Ollama instances", matched=result.returncode == 0)

    async def start(self, port: int, log_path: str) -> asyncio.subprocess.Process:
        """Start ``ollama serve`` on all interfaces with cross-origin access allowed."""
        env = os.environ.copy()
        env.update({
            "OLLAMA_HOST": f"0.0.0.0:{port}",
            "OLLAMA_ORIGINS": "*",
        })
        with open(log_path, "wb") as log:
            return await asyncio.create_subprocess_exec(
                self.binary, "serve",
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )


def parse_model_list(output: str) -> List[str]:
    """Parse the NAME column of ``ollama list`` output."""
    names = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if parts:
            names.append(parts[0])
    return names
