"""Backend discovery for the worker.

Resolves the engine executables (and the in-process Claude SDK module),
preferring an external dependency directory when one was supplied through
``initialize`` so an upgraded backend can be dropped in without touching the
installation. Handles are cached until ``invalidate()``.

External layout::

    <externalDepsDir>/claude-cli/bin/claude
    <externalDepsDir>/codex-cli/bin/codex
"""
from __future__ import annotations

import asyncio
import importlib
import logging
import os
import re
import shutil
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from types import ModuleType

from .config import BridgeConfig
from .errors import BackendNotFound

log = logging.getLogger("agent_bridge")

BACKENDS = ("claude", "codex")

_EXTERNAL_SUBDIRS = {"claude": "claude-cli", "codex": "codex-cli"}
_VERSION_RE = re.compile(r"\d+\.\d+(?:\.\d+)?(?:[-+.\w]*)?")
_VERSION_TIMEOUT = 10.0


@dataclass
class ProviderStatus:
    available: bool
    version: str | None
    source: str  # "external" | "path" | "sdk" | "mock" | "none"

    def to_dict(self) -> dict:
        return {"available": self.available, "version": self.version, "source": self.source}


@dataclass
class ResolvedBinary:
    path: str
    source: str


class BackendLocator:
    def __init__(self, config: BridgeConfig) -> None:
        self.config = config
        self.external_dir: str | None = None
        self._binaries: dict[str, ResolvedBinary | None] = {}
        self._versions: dict[str, str | None] = {}
        self._sdk: ModuleType | None = None

    def set_external_dir(self, path: str | None) -> None:
        self.external_dir = path.strip() if isinstance(path, str) and path.strip() else None
        self.invalidate()

    def invalidate(self) -> None:
        """Forget resolved binaries and probed versions.

        The next lookup re-resolves external and PATH binaries. An SDK that was
        missing can then be imported, but an already imported
        ``claude_agent_sdk`` stays in ``sys.modules`` until the worker restarts.
        """
        self._binaries.clear()
        self._versions.clear()
        self._sdk = None
        importlib.invalidate_caches()

    def _binary_name(self, backend: str) -> str:
        return self.config.claude_bin if backend == "claude" else self.config.codex_bin

    def find_binary(self, backend: str) -> ResolvedBinary | None:
        if backend in self._binaries:
            return self._binaries[backend]
        name = self._binary_name(backend)
        resolved: ResolvedBinary | None = None
        if self.external_dir:
            candidate = Path(self.external_dir) / _EXTERNAL_SUBDIRS[backend] / "bin" / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                resolved = ResolvedBinary(str(candidate), "external")
            else:
                log.debug("[locator] %s not found under external dir, falling back to PATH", backend)
        if resolved is None:
            found = shutil.which(name)
            if found:
                resolved = ResolvedBinary(found, "path")
        self._binaries[backend] = resolved
        return resolved

    def require_binary(self, backend: str) -> ResolvedBinary:
        resolved = self.find_binary(backend)
        if resolved is None:
            raise BackendNotFound(
                backend,
                f"'{self._binary_name(backend)}' was not found on PATH. "
                "Please install it or check your configuration.",
            )
        return resolved

    def load_claude_sdk(self) -> ModuleType:
        """Import ``claude_agent_sdk`` lazily; it is only needed for explicit credentials."""
        if self._sdk is not None:
            return self._sdk
        try:
            self._sdk = importlib.import_module("claude_agent_sdk")
        except ImportError as e:
            raise BackendNotFound("claude", f"claude_agent_sdk is not installed ({e})") from e
        return self._sdk

    @staticmethod
    def sdk_version() -> str | None:
        try:
            return pkg_version("claude-agent-sdk")
        except PackageNotFoundError:
            return None

    async def _probe_version(self, binary: ResolvedBinary) -> str | None:
        if binary.path in self._versions:
            return self._versions[binary.path]
        found: str | None = None
        try:
            proc = await asyncio.create_subprocess_exec(
                binary.path, "--version",
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            try:
                stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_VERSION_TIMEOUT)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
                stdout = b""
            match = _VERSION_RE.search(stdout.decode(errors="replace"))
            found = match.group(0) if match else "unknown"
        except OSError as e:
            log.warning("[locator] version probe failed for %s: %s", binary.path, e)
        self._versions[binary.path] = found
        return found

    async def provider_status(self, backend: str) -> ProviderStatus:
        """Availability report for ``initialize``. Never raises."""
        if self.config.mock:
            return ProviderStatus(True, "mock", "mock")
        try:
            binary = self.find_binary(backend)
            if binary is not None:
                version = await self._probe_version(binary)
                if version is not None:
                    return ProviderStatus(True, version, binary.source)
            if backend == "claude":
                sdk_version = self.sdk_version()
                if sdk_version is not None:
                    return ProviderStatus(True, sdk_version, "sdk")
        except Exception:
            log.exception("[locator] %s status check failed", backend)
        return ProviderStatus(False, None, "none")
