"""Tests for the default collaborator backends (no network, no real tools)."""

from __future__ import annotations

import io
import sys
import tarfile
import time
from pathlib import Path

import httpx
import pytest

from layerforge.core.executor import is_retryable
from layerforge.models.variant import ModelKind, ModelPrefetch
from layerforge.toolchain import (
    AssetBundler,
    DependencyInstaller,
    HttpModelFetcher,
    ModelFetcher,
    PipDependencyInstaller,
    RuntimeInstaller,
    TarballRuntimeInstaller,
    ToolInvocationError,
    default_toolchain,
    run_tool,
)
from layerforge.toolchain import defaults


class TestRunTool:
    def test_success(self):
        proc = run_tool([sys.executable, "-c", "print('ok')"])
        assert proc.stdout.strip() == "ok"

    def test_nonzero_exit_raises(self):
        with pytest.raises(ToolInvocationError) as info:
            run_tool([sys.executable, "-c", "import sys; sys.stderr.write('broken'); sys.exit(3)"])
        assert info.value.returncode == 3
        assert "broken" in str(info.value)


class TestPipDependencyInstaller:
    def test_argv(self, monkeypatch, tmp_path: Path):
        seen: list[list[str]] = []
        monkeypatch.setattr(defaults, "run_tool", lambda argv, **kw: seen.append(list(argv)))
        PipDependencyInstaller(python="py").install(
            tmp_path / "site",
            manifest=tmp_path / "requirements.txt",
            packages=("torch",),
            index_url="https://download.pytorch.org/whl/cpu",
        )
        [argv] = seen
        assert argv[:4] == ["py", "-m", "pip", "install"]
        assert argv[argv.index("--target") + 1] == str(tmp_path / "site")
        assert argv[argv.index("--index-url") + 1].endswith("/cpu")
        assert argv[argv.index("-r") + 1] == str(tmp_path / "requirements.txt")
        assert argv[-1] == "torch"


class TestHttpModelFetcher:
    def _transport(self) -> httpx.MockTransport:
        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path == "/api/models/org/model":
                return httpx.Response(200, json={"siblings": [{"rfilename": "config.json"}, {"rfilename": "onnx/model.onnx"}]})
            if path.startswith("/org/model/resolve/main/"):
                return httpx.Response(200, content=path.rsplit("/", 1)[-1].encode())
            if path == "/api/models/Systran/faster-whisper-base":
                return httpx.Response(200, json={"siblings": [{"rfilename": "model.bin"}]})
            if path.startswith("/Systran/faster-whisper-base/resolve/main/"):
                return httpx.Response(200, content=b"weights")
            if request.url.host == "openaipublic.blob.core.windows.net":
                return httpx.Response(200, content=b"tokens")
            return httpx.Response(404)

        return httpx.MockTransport(handler)

    def test_fetch_repository(self, tmp_path: Path):
        fetcher = HttpModelFetcher("https://hf.test", transport=self._transport())
        fetcher.fetch(ModelPrefetch(kind=ModelKind.EMBEDDING, name="org/model"), tmp_path)
        target = tmp_path / "org--model"
        assert (target / "config.json").read_text() == "config.json"
        assert (target / "onnx" / "model.onnx").exists()
        assert not list(target.rglob("*.part"))

    def test_whisper_maps_to_repository(self, tmp_path: Path):
        fetcher = HttpModelFetcher("https://hf.test", transport=self._transport())
        fetcher.fetch(ModelPrefetch(kind=ModelKind.WHISPER, name="base"), tmp_path)
        assert (tmp_path / "Systran--faster-whisper-base" / "model.bin").read_bytes() == b"weights"

    def test_tiktoken_encoding(self, tmp_path: Path):
        fetcher = HttpModelFetcher("https://hf.test", transport=self._transport())
        fetcher.fetch(ModelPrefetch(kind=ModelKind.TIKTOKEN, name="cl100k_base"), tmp_path)
        assert (tmp_path / "cl100k_base.tiktoken").read_bytes() == b"tokens"

    def test_missing_model_raises_status_error(self, tmp_path: Path):
        fetcher = HttpModelFetcher("https://hf.test", transport=self._transport())
        with pytest.raises(httpx.HTTPStatusError):
            fetcher.fetch(ModelPrefetch(kind=ModelKind.EMBEDDING, name="org/missing"), tmp_path)


class TestFetchDeadline:
    """The fetch timeout bounds the whole transfer, not each read."""

    @staticmethod
    def _drip(n: int = 8, delay: float = 0.05):
        for _ in range(n):
            time.sleep(delay)
            yield b"x"

    def test_slow_stream_exceeds_deadline(self, tmp_path: Path):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=self._drip()))
        fetcher = HttpModelFetcher("https://hf.test", transport=transport)
        started = time.monotonic()
        with pytest.raises(httpx.TimeoutException):
            fetcher.fetch(ModelPrefetch(kind=ModelKind.TIKTOKEN, name="cl100k_base"), tmp_path, timeout=0.15)
        assert time.monotonic() - started < 0.4
        assert not (tmp_path / "cl100k_base.tiktoken").exists()
        assert not list(tmp_path.glob("*.part"))

    def test_many_files_share_one_deadline(self, tmp_path: Path):
        files = [{"rfilename": f"shard-{i}.bin"} for i in range(10)]
        served: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/models/org/big":
                return httpx.Response(200, json={"siblings": files})
            time.sleep(0.05)
            served.append(request.url.path)
            return httpx.Response(200, content=b"w")

        fetcher = HttpModelFetcher("https://hf.test", transport=httpx.MockTransport(handler))
        with pytest.raises(httpx.TimeoutException):
            fetcher.fetch(ModelPrefetch(kind=ModelKind.EMBEDDING, name="org/big"), tmp_path, timeout=0.2)
        assert len(served) < len(files)

    def test_fast_fetch_within_deadline(self, tmp_path: Path):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=self._drip(3, 0.0)))
        fetcher = HttpModelFetcher("https://hf.test", transport=transport)
        fetcher.fetch(ModelPrefetch(kind=ModelKind.TIKTOKEN, name="cl100k_base"), tmp_path, timeout=5.0)
        assert (tmp_path / "cl100k_base.tiktoken").read_bytes() == b"xxx"

    def test_runtime_download_exceeds_deadline(self, tmp_path: Path):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=self._drip()))
        installer = TarballRuntimeInstaller("https://rt.test/runtime-{arch}.tgz", transport=transport)
        dest = tmp_path / "rt"
        dest.mkdir()
        with pytest.raises(httpx.TimeoutException):
            installer.install(dest, timeout=0.15)
        assert [p.name for p in tmp_path.iterdir()] == ["rt"]

    def test_overrun_is_retryable(self):
        assert is_retryable(httpx.ReadTimeout("deadline"))


class TestTarballRuntimeInstaller:
    def _archive(self) -> bytes:
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode="w:gz") as tar:
            for name, data in {"bin/ollama": b"bin", "lib/ollama/cuda_v12/libcuda.so": b"gpu"}.items():
                info = tarfile.TarInfo(name)
                info.size = len(data)
                tar.addfile(info, io.BytesIO(data))
        return buf.getvalue()

    def _installer(self) -> TarballRuntimeInstaller:
        archive = self._archive()
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=archive))
        return TarballRuntimeInstaller("https://rt.test/runtime-{arch}.tgz", transport=transport)

    def test_cpu_install_drops_gpu_libraries(self, tmp_path: Path):
        dest = tmp_path / "rt"
        dest.mkdir()
        self._installer().install(dest, accelerator=False)
        assert (dest / "bin" / "ollama").read_bytes() == b"bin"
        assert not (dest / "lib" / "ollama" / "cuda_v12").exists()
        assert [p.name for p in tmp_path.iterdir()] == ["rt"]

    def test_accelerator_install_keeps_gpu_libraries(self, tmp_path: Path):
        dest = tmp_path / "rt"
        dest.mkdir()
        self._installer().install(dest, accelerator=True)
        assert (dest / "lib" / "ollama" / "cuda_v12" / "libcuda.so").exists()


class TestDefaultToolchain:
    def test_backends_satisfy_protocols(self):
        tc = default_toolchain(model_endpoint="https://hf.test", runtime_url="https://rt.test/{arch}.tgz")
        assert isinstance(tc.bundler, AssetBundler)
        assert isinstance(tc.installer, DependencyInstaller)
        assert isinstance(tc.fetcher, ModelFetcher)
        assert isinstance(tc.runtime, RuntimeInstaller)
        assert tc.fetcher.endpoint == "https://hf.test"
        assert tc.runtime.url_template == "https://rt.test/{arch}.tgz"


class TestPackagingFloor:
    def test_python_floor_supports_tar_filters(self):
        import tomllib

        pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
        data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
        assert data["project"]["requires-python"] == ">=3.11.4"
        assert hasattr(tarfile, "data_filter")
