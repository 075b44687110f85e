"""Default collaborator backends: npm, pip, Hugging Face over HTTP, runtime tarball.

Subprocess-backed tools raise ``ToolInvocationError`` on a nonzero exit and
let ``subprocess.TimeoutExpired`` escape when their deadline passes.  HTTP
backends let ``httpx`` errors escape and raise ``httpx.ReadTimeout`` once the
whole fetch outlives its deadline.  The executor decides which of these
are retryable.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import subprocess
import sys
import tarfile
import time
import uuid
from collections.abc import Mapping, Sequence
from pathlib import Path

import httpx

from layerforge.models.variant import ModelKind, ModelPrefetch
from layerforge.toolchain.protocols import Toolchain

logger = logging.getLogger(__name__)

ACCELERATOR_INDEX = "https://download.pytorch.org/whl/{variant}"
CPU_INDEX = "https://download.pytorch.org/whl/cpu"
TIKTOKEN_URL = "https://openaipublic.blob.core.windows.net/encodings/{name}.tiktoken"
WHISPER_REPO = "Systran/faster-whisper-{size}"

_STDERR_TAIL = 2000


class ToolInvocationError(RuntimeError):
    """An external tool exited nonzero."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        tail = stderr.strip()[-_STDERR_TAIL:]
        super().__init__(
            f"{argv[0]} exited with status {returncode}" + (f": {tail}" if tail else "")
        )


def run_tool(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *argv*, raising ``ToolInvocationError`` on a nonzero exit."""
    merged_env = dict(os.environ)
    if env:
        merged_env.update(env)
    logger.debug("Running %s (cwd=%s, timeout=%s)", " ".join(argv), cwd, timeout)
    proc = subprocess.run(
        list(argv),
        cwd=cwd,
        env=merged_env,
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    if proc.returncode != 0:
        raise ToolInvocationError(argv, proc.returncode, proc.stderr)
    return proc


def _deadline(timeout: float | None) -> float | None:
    return None if timeout is None else time.monotonic() + timeout


def _check_deadline(deadline: float | None, url: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise httpx.ReadTimeout(f"Fetch deadline exceeded while downloading {url}")


def _download(client: httpx.Client, url: str, dest: Path, *, deadline: float | None = None) -> None:
    """Stream *url* to *dest* via a sibling temp file, renamed on completion.

    The client timeout bounds each read; *deadline* (a ``time.monotonic``
    value) bounds the whole transfer.
    """
    _check_deadline(deadline, url)
    dest.parent.mkdir(parents=True, exist_ok=True)
    tmp = dest.with_name(f".{dest.name}.{uuid.uuid4().hex}.part")
    try:
        with client.stream("GET", url) as response:
            response.raise_for_status()
            with open(tmp, "wb") as fh:
                for chunk in response.iter_bytes():
                    fh.write(chunk)
                    _check_deadline(deadline, url)
        os.replace(tmp, dest)
    finally:
        tmp.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Asset bundling
# ---------------------------------------------------------------------------


class NpmAssetBundler:
    """``npm ci`` + ``npm run build``; the bundle is read from ``build_dir``."""

    def __init__(self, npm: str = "npm", build_dir: str = "build") -> None:
        self.npm = npm
        self.build_dir = build_dir

    def install(self, workdir: Path, *, timeout: float | None = None) -> None:
        run_tool([self.npm, "ci", "--force"], cwd=workdir, timeout=timeout)

    def build(
        self,
        workdir: Path,
        build_identifier: str,
        dest: Path,
        *,
        timeout: float | None = None,
    ) -> None:
        run_tool(
            [self.npm, "run", "build"],
            cwd=workdir,
            env={"APP_BUILD_HASH": build_identifier},
            timeout=timeout,
        )
        bundle = workdir / self.build_dir
        if not bundle.is_dir():
            raise FileNotFoundError(f"Bundler produced no {self.build_dir}/ directory in {workdir}")
        shutil.copytree(bundle, dest, symlinks=True, dirs_exist_ok=True)


# ---------------------------------------------------------------------------
# Dependency installation
# ---------------------------------------------------------------------------


class PipDependencyInstaller:
    """``pip install --target`` into a self-contained directory."""

    def __init__(self, python: str = sys.executable) -> None:
        self.python = python

    def install(
        self,
        dest: Path,
        *,
        manifest: Path | None = None,
        packages: Sequence[str] = (),
        index_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        argv = [
            self.python, "-m", "pip", "install",
            "--no-cache-dir", "--disable-pip-version-check",
            "--upgrade", "--target", str(dest),
        ]
        if index_url:
            argv += ["--index-url", index_url]
        if manifest is not None:
            argv += ["-r", str(manifest)]
        argv += list(packages)
        run_tool(argv, timeout=timeout)


# ---------------------------------------------------------------------------
# Model fetching
# ---------------------------------------------------------------------------


class HttpModelFetcher:
    """Fetches model repositories from a Hugging Face compatible endpoint.

    Tokenizer encodings come from the public tiktoken blob store; whisper
    sizes map onto their faster-whisper repositories.
    """

    def __init__(
        self,
        endpoint: str = "https://huggingface.co",
        *,
        revision: str = "main",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.revision = revision
        self._transport = transport

    def _client(self, timeout: float | None) -> httpx.Client:
        return httpx.Client(timeout=timeout, follow_redirects=True, transport=self._transport)

    def fetch(self, model: ModelPrefetch, dest: Path, *, timeout: float | None = None) -> None:
        deadline = _deadline(timeout)
        with self._client(timeout) as client:
            if model.kind == ModelKind.TIKTOKEN:
                _download(
                    client,
                    TIKTOKEN_URL.format(name=model.name),
                    dest / f"{model.name}.tiktoken",
                    deadline=deadline,
                )
                return
            repo = WHISPER_REPO.format(size=model.name) if model.kind == ModelKind.WHISPER else model.name
            self._fetch_repo(client, repo, dest / repo.replace("/", "--"), deadline)

    def _fetch_repo(
        self, client: httpx.Client, repo: str, target: Path, deadline: float | None = None
    ) -> None:
        response = client.get(f"{self.endpoint}/api/models/{repo}", params={"revision": self.revision})
        response.raise_for_status()
        files = [s["rfilename"] for s in response.json().get("siblings", [])]
        logger.info("Fetching %d files for %s", len(files), repo)
        for rel in files:
            _download(
                client,
                f"{self.endpoint}/{repo}/resolve/{self.revision}/{rel}",
                target / rel,
                deadline=deadline,
            )


# ---------------------------------------------------------------------------
# Bundled runtime
# ---------------------------------------------------------------------------


class TarballRuntimeInstaller:
    """Installs the bundled inference runtime from its release tarball."""

    _ARCH = {"x86_64": "amd64", "amd64": "amd64", "aarch64": "arm64", "arm64": "arm64"}

    def __init__(
        self,
        url_template: str = "https://ollama.com/download/ollama-linux-{arch}.tgz",
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url_template = url_template
        self._transport = transport

    def install(
        self,
        dest: Path,
        *,
        accelerator: bool = False,
        timeout: float | None = None,
    ) -> None:
        arch = self._ARCH.get(platform.machine().lower(), "amd64")
        url = self.url_template.format(arch=arch)
        archive = dest.parent / f".runtime-{uuid.uuid4().hex}.tgz"
        try:
            with httpx.Client(timeout=timeout, follow_redirects=True, transport=self._transport) as client:
                _download(client, url, archive, deadline=_deadline(timeout))
            with tarfile.open(archive, "r:*") as tar:
                tar.extractall(dest, filter="data")
        finally:
            archive.unlink(missing_ok=True)
        if not accelerator:
            # GPU libraries ship in the same archive; drop them for CPU-only builds.
            shutil.rmtree(dest / "lib" / "ollama" / "cuda_v12", ignore_errors=True)
            shutil.rmtree(dest / "lib" / "ollama" / "cuda_v11", ignore_errors=True)


def default_toolchain(
    *,
    model_endpoint: str = "https://huggingface.co",
    runtime_url: str | None = None,
) -> Toolchain:
    """Build the production toolchain."""
    runtime = TarballRuntimeInstaller(runtime_url) if runtime_url else TarballRuntimeInstaller()
    return Toolchain(
        bundler=NpmAssetBundler(),
        installer=PipDependencyInstaller(),
        fetcher=HttpModelFetcher(model_endpoint),
        runtime=runtime,
    )
