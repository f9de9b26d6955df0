# matrixci_workflow.py
# Build + test a Rust library across toolchains / targets, and merge tarpaulin
# coverage from the Linux targets.
from __future__ import annotations

from matrixci import coverage, job, matrix, sh, wf

LINUX_TARGETS = [
    "x86_64-unknown-linux-gnu",
    "x86_64-unknown-linux-musl",
    "i686-unknown-linux-gnu",
    "i686-unknown-linux-musl",
    "x86_64-unknown-netbsd",
    "wasm32-unknown-emscripten",
]

# Only run the tests when the target matches the host machine.
HOST_CAN_RUN_TESTS = (
    "matrix.os == 'ubuntu-latest' && (startsWith(matrix.target, 'x86_64-unknown-linux-')"
    " || startsWith(matrix.target, 'i686-unknown-linux-'))"
    " || matrix.os == 'macos-latest' && startsWith(matrix.target, 'x86_64-apple-darwin')"
)


def workflow():
    build_matrix = (
        matrix(toolchain=["stable", "beta", "nightly"], target=LINUX_TARGETS, os=["ubuntu-latest"])
        .include(toolchain="stable", target="x86_64-apple-darwin", os="macos-latest")
        .include(toolchain="beta", target="x86_64-apple-darwin", os="macos-latest")
        .include(toolchain="nightly", target="x86_64-apple-darwin", os="macos-latest")
        .include(toolchain="nightly", target="wasm32-wasi", os="ubuntu-latest")
    )

    return wf(
        job(
            "build",
            sh(
                "Install Rust toolchain",
                "rustup toolchain install ${{ matrix.toolchain }} --target ${{ matrix.target }} --profile minimal",
            ),
            sh(
                "Install 32-bit glibc build dependencies",
                "sudo apt-get update && sudo apt-get -y install gcc-multilib",
                if_="matrix.os == 'ubuntu-latest' && matrix.target == 'i686-unknown-linux-gnu'",
            ),
            sh("Build", "cargo +${{ matrix.toolchain }} build --verbose --target ${{ matrix.target }} --lib"),
            sh(
                "Run tests",
                "cargo +${{ matrix.toolchain }} test --verbose --target ${{ matrix.target }}",
                if_=HOST_CAN_RUN_TESTS,
            ),
            display_name="Build",
            matrix=build_matrix,
            fail_fast=False,
            # Allow nightly builds to fail
            continue_on_error="matrix.toolchain == 'nightly'",
        ),
        job(
            "coverage-tarpaulin",
            sh(
                "Install Rust toolchain",
                "rustup toolchain install ${{ matrix.toolchain }} --target ${{ matrix.target }} --profile minimal",
            ),
            sh("Install tarpaulin", "cargo install cargo-tarpaulin"),
            sh(
                "Run tarpaulin",
                "cargo +${{ matrix.toolchain }} tarpaulin --verbose --out Xml"
                " --output-dir target/tarpaulin/${{ matrix.target }} --target ${{ matrix.target }}",
                artifacts=["target/tarpaulin/${{ matrix.target }}/cobertura.xml"],
            ),
            display_name="Tarpaulin",
            matrix=matrix(
                toolchain=["stable"],
                target=["x86_64-unknown-linux-gnu", "x86_64-unknown-linux-musl"],
                os=["ubuntu-latest"],
            ),
            fail_fast=False,
            env={
                "JOB": "${{ github.job }}",
                "OS": "${{ matrix.os }}",
                "TARGET": "${{ matrix.target }}",
                "TOOLCHAIN": "${{ matrix.toolchain }}",
            },
            coverage=coverage(
                name="${{ matrix.toolchain }}-${{ matrix.target }}",
                fail_ci_if_error=True,
                env_vars="OS,TARGET,TOOLCHAIN,JOB",
            ),
        ),
        name="CI",
    )
