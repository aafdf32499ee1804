"""Built-in pipeline manifest.

Used when the project has no kbuild.yaml, and as the base that a partial
project manifest is merged onto. Archive checksums are left unpinned here;
projects that need verified downloads pin them in their own manifest.
"""

from typing import Any

MUSL_CC_BASE = "https://musl.cc"
ALPINE_CDN_BASE = "https://dl-cdn.alpinelinux.org/alpine"


def _toolchain(triple: str) -> dict[str, Any]:
    return {
        "kind": "archive",
        "name": f"{triple}-cross",
        "url": f"{MUSL_CC_BASE}/{triple}-cross.tgz",
    }


def _minirootfs(branch: str, release: str, arch: str) -> dict[str, Any]:
    return {
        "kind": "archive",
        "name": f"alpine-minirootfs-{arch}",
        "url": (
            f"{ALPINE_CDN_BASE}/{branch}/releases/{arch}/"
            f"alpine-minirootfs-{release}-{arch}.tar.gz"
        ),
    }


DEFAULT_MANIFEST: dict[str, Any] = {
    "version": 1,
    "architectures": {
        "x86_64": {
            "triple": "x86_64-linux-musl",
            "toolchain": _toolchain("x86_64-linux-musl"),
            "minirootfs": _minirootfs("v3.15", "3.15.0", "x86_64"),
            "loader": "ld-musl-x86_64.so.1",
        },
        "aarch64": {
            "triple": "aarch64-linux-musl",
            "toolchain": _toolchain("aarch64-linux-musl"),
            "minirootfs": _minirootfs("v3.15", "3.15.0", "aarch64"),
            "loader": "ld-musl-aarch64.so.1",
        },
        "riscv64": {
            "triple": "riscv64-linux-musl",
            "toolchain": _toolchain("riscv64-linux-musl"),
            "minirootfs": _minirootfs("v3.20", "3.20.0", "riscv64"),
            "loader": "ld-musl-riscv64.so.1",
        },
    },
    "shared_libs": ["libstdc++.so.6", "libgcc_s.so.1"],
    "libc_test": {
        "source": {
            "kind": "git",
            "name": "libc-test",
            "url": "https://repo.or.cz/libc-test.git",
            "revision": "master",
        },
        "subpath": "libc-test",
        "build": [
            ["cp", "-f", "config.mak.def", "config.mak"],
            ["make", "-j{jobs}", "CROSS_COMPILE={cross_compile}"],
        ],
        "exclude": [".git"],
    },
    "other_test": {
        "source": {
            "kind": "local",
            "name": "other-test",
            "path": "other-tests",
        },
        "subpath": "other-test",
    },
    "image": {
        "size_mib": 256,
        "label": "rootfs",
        "command": [
            "mkfs.ext4",
            "-F",
            "-q",
            "-b",
            "4096",
            "-L",
            "{label}",
            "-U",
            "{uuid}",
            "-E",
            "hash_seed={uuid}",
            "-d",
            "{rootfs}",
            "{image}",
        ],
        "env": {"E2FSPROGS_FAKE_TIME": "{epoch}"},
    },
    "setup": {"submodules": True, "lfs": True, "commands": []},
    "update": {"commands": [["rustup", "update"], ["cargo", "update"]]},
    "check": {
        "commands": [
            ["cargo", "fmt", "--all", "--", "--check"],
            ["cargo", "clippy", "--all-features"],
        ]
    },
    "doc": {"commands": [["cargo", "doc", "--no-deps"]]},
    "clean": {"commands": [["cargo", "clean"]]},
}


__all__ = ["ALPINE_CDN_BASE", "DEFAULT_MANIFEST", "MUSL_CC_BASE"]
