"""Content-addressed registry of decoded WebAssembly modules."""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass

from ..errors import UnknownModule
from .parser import ExternalKind, FuncType, WasmModule, parse_module

__all__ = ["ModuleHandle", "ModuleRegistry", "module_hash"]

logger = logging.getLogger(__name__)


def module_hash(data: bytes) -> bytes:
    """SHA-256 of the module bytes; the identity used by manifests, deployments and proofs."""
    return hashlib.sha256(data).digest()


@dataclass(slots=True, frozen=True)
class ModuleHandle:
    hash: bytes
    name: str | None = None

    @property
    def hex(self) -> str:
        return self.hash.hex()


class ModuleRegistry:
    """Maps module hashes to decoded modules and their original bytes.

    Populated once at session start, then frozen; after that it is only read,
    so a single instance can be handed to every component (and every worker).
    """

    def __init__(self) -> None:
        self._modules: dict[bytes, WasmModule] = {}
        self._bytecode: dict[bytes, bytes] = {}
        self._names: dict[bytes, str] = {}
        self._frozen = False

    def __contains__(self, digest: bytes) -> bool:
        return digest in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def register(self, data: bytes, name: str | None = None) -> ModuleHandle:
        """Decode and store *data*; registering identical bytes twice is a no-op."""
        digest = module_hash(data)
        if digest in self._modules:
            if name and digest not in self._names:
                self._names[digest] = name
            return ModuleHandle(digest, self._names.get(digest))
        if self._frozen:
            raise RuntimeError("module registry is frozen")
        module = parse_module(data)
        self._modules[digest] = module
        self._bytecode[digest] = bytes(data)
        if name:
            self._names[digest] = name
        logger.debug("registered module %s (%s, %d bytes)", digest.hex()[:16], name or "anonymous", len(data))
        return ModuleHandle(digest, name)

    def resolve(self, digest: bytes) -> WasmModule:
        try:
            return self._modules[digest]
        except KeyError:
            raise UnknownModule(digest) from None

    def bytecode(self, digest: bytes) -> bytes:
        try:
            return self._bytecode[digest]
        except KeyError:
            raise UnknownModule(digest) from None

    def name_of(self, digest: bytes) -> str | None:
        return self._names.get(digest)

    def handles(self) -> list[ModuleHandle]:
        return [ModuleHandle(digest, self._names.get(digest)) for digest in self._modules]

    def exports(self, handle: ModuleHandle | bytes) -> list[tuple[str, FuncType]]:
        """Exported functions of a module with their signatures, in export order."""
        digest = handle.hash if isinstance(handle, ModuleHandle) else handle
        module = self.resolve(digest)
        return [
            (export.name, module.func_type(export.index))
            for export in module.exports
            if export.kind == ExternalKind.FUNC
        ]
