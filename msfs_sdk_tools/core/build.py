"""Cargo invocation for building simulator WASM modules against an installed SDK."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

import structlog

logger = structlog.get_logger()

WASM_TARGET = "wasm32-wasip1"
WASI_LIB_DIR = ("lib", "wasm32-wasi")
CLANG_BUILTINS = "libclang_rt.builtins-wasm32.a"

# Symbols the simulator's WASM host calls into
EXPORTED_SYMBOLS = (
    "__wasm_call_ctors",
    "malloc",
    "free",
    "mark_decommit_pages",
    "mallinfo",
    "mchunkit_begin",
    "mchunkit_next",
    "get_pages_state",
)


def rust_flags(wasi_sysroot: Path) -> list[str]:
    """Compiler flags for a simulator module linked against the WASI sysroot."""
    lib_dir = wasi_sysroot.joinpath(*WASI_LIB_DIR)
    flags = [
        "-Cstrip=symbols",
        "-Clto",
        "-Ctarget-feature=-crt-static,+bulk-memory",
        "-Clink-self-contained=no",
        "-Clink-arg=-l",
        "-Clink-arg=c",
        f"-Clink-arg={lib_dir / CLANG_BUILTINS}",
        "-Clink-arg=-L",
        f"-Clink-arg={lib_dir}",
        "-Clink-arg=--export-table",
        "-Clink-arg=--allow-undefined",
        "-Clink-arg=--export-dynamic",
    ]
    flags.extend(f"-Clink-arg=--export={symbol}" for symbol in EXPORTED_SYMBOLS)
    return flags


def cargo_build_environment(sdk_path: Path, wasi_sysroot: Path) -> dict[str, str]:
    """Environment variables cargo needs to find the SDK and sysroot."""
    return {
        "WASI_SYSROOT": str(wasi_sysroot),
        "MSFS_SDK": str(sdk_path),
        "RUSTFLAGS": " ".join(rust_flags(wasi_sysroot)),
        "CFLAGS": f"--sysroot={wasi_sysroot}",
    }


def cargo_build_command() -> list[str]:
    return ["cargo", "build", "--release", "--target", WASM_TARGET]


def run_cargo_build(
    sdk_path: Path, wasi_sysroot: Path, cwd: Path | None = None
) -> subprocess.CompletedProcess[str]:
    """Run a release build of the crate in ``cwd``.

    Args:
        sdk_path: Installation root of the SDK
        wasi_sysroot: WASI sysroot inside the installation root
        cwd: Crate directory, defaults to the current directory

    Returns:
        Completed process with captured output
    """
    env = {**os.environ, **cargo_build_environment(sdk_path, wasi_sysroot)}
    command = cargo_build_command()
    logger.info("cargo_build_started", command=" ".join(command), sdk=str(sdk_path))
    result = subprocess.run(command, cwd=cwd, env=env, capture_output=True, text=True)
    logger.info("cargo_build_finished", returncode=result.returncode)
    return result
