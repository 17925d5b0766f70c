from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field, replace

from .config import TOOLCHAIN_BIN
from .errors import ToolchainNotFoundError


@dataclass(frozen=True)
class Toolchain:
    """The external compiler/test runner, invoked as ``binary *prefix *args``.

    ``prefix`` lets a wrapper (e.g. an interpreter running a script) stand in
    for the real binary.
    """

    binary: str = TOOLCHAIN_BIN
    prefix: tuple[str, ...] = field(default_factory=tuple)

    def command(self, *args: str) -> list[str]:
        return [self.binary, *self.prefix, *args]

    def resolve(self) -> "Toolchain":
        """Return a copy with an absolute binary path, or fail fast."""
        found = shutil.which(self.binary)
        if not found:
            raise ToolchainNotFoundError(
                f"Toolchain binary {self.binary!r} is not on PATH; set CANTON_IDE_TOOLCHAIN_BIN"
            )
        return replace(self, binary=os.path.abspath(found))
