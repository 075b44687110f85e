"""External collaborators: Protocols plus the default backends."""

from layerforge.toolchain.defaults import (
    HttpModelFetcher,
    NpmAssetBundler,
    PipDependencyInstaller,
    TarballRuntimeInstaller,
    ToolInvocationError,
    default_toolchain,
    run_tool,
)
from layerforge.toolchain.protocols import (
    AssetBundler,
    DependencyInstaller,
    ModelFetcher,
    RuntimeInstaller,
    Toolchain,
)

__all__ = [
    "AssetBundler",
    "DependencyInstaller",
    "ModelFetcher",
    "RuntimeInstaller",
    "Toolchain",
    "HttpModelFetcher",
    "NpmAssetBundler",
    "PipDependencyInstaller",
    "TarballRuntimeInstaller",
    "ToolInvocationError",
    "default_toolchain",
    "run_tool",
]
