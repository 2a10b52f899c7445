from __future__ import annotations
import asyncio
import os
from pathlib import Path
from typing import Dict

from loguru import logger

from ..errors import FunctionNotLoadedError, ManifestError, RuntimeFlowError
from ..manifest import Manifest
from ..resources import Resources
from . import register_driver
from .base import Driver

MANIFEST_FILE = "manifest.json"
ENV_PREFIX = "FLOWL_"


@register_driver
class ShellDriver(Driver):
    """Runs shell script functions stored under the shell directory.

    Each function lives in its own directory holding a `manifest.json` and
    the entrypoint script it names. Args reach the script as `FLOWL_<KEY>`
    environment variables.
    """

    name = "shell"

    def function_dir(self) -> Path:
        base = self.resources.shell_dir if self.resources and self.resources.shell_dir else Path(".")
        return Path(base) / self.location.path

    async def load(self, resources: Resources) -> None:
        self.resources = resources
        fdir = self.function_dir()
        manifest = Manifest.from_file(fdir / MANIFEST_FILE)
        if not manifest.entrypoint:
            raise ManifestError(f"no entrypoint in shell function '{self.function_name()}'")
        if not (fdir / manifest.entrypoint).is_file():
            raise FunctionNotLoadedError(f"entrypoint '{manifest.entrypoint}' not found in {fdir}")
        self._manifest = manifest

    def to_env(self, args: Dict[str, str]) -> Dict[str, str]:
        env = dict(os.environ)
        for k, v in args.items():
            env[ENV_PREFIX + k.upper()] = v
        return env

    async def run(self, args: Dict[str, str]) -> Dict[str, str]:
        fdir = self.function_dir()
        program = fdir / self.manifest().entrypoint
        proc = await asyncio.create_subprocess_exec(
            "/bin/sh", "-c", str(program),
            cwd=str(fdir),
            env=self.to_env(args),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                self.resources.log_writer.write(line.decode(errors="replace"))
            code = await proc.wait()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise
        if code != 0:
            logger.debug("shell function {} exited with {}", self.function_name(), code)
            raise RuntimeFlowError(f"shell function '{self.function_name()}' exited with status {code}")
        return {"exit_code": str(code)}
