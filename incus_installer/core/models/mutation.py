"""
Mutation models — declarative changes to host resources.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


class MutationKind(str, Enum):
    LINE = "line"              # a line is present in a text file
    BLOCK = "block"            # a marked multi-line block is present
    FILE = "file"              # a file has exactly this content
    MAPPING = "mapping"        # exactly one ``key:value`` entry for a key
    DIRECTORY = "directory"    # a directory exists
    SYMLINK = "symlink"        # a symlink points at a target
    COPY = "copy"              # a file is a byte-identical copy of a source


class MutationRecord(BaseModel):
    """A resource and the state it must be in.

    Applying the same record twice yields the same end state as
    applying it once.
    """

    model_config = ConfigDict(frozen=True)

    kind: MutationKind
    resource: str               # host path (already resolved under root)
    value: str = ""             # line / content / entry value / link target / copy source
    key: str = ""               # block marker or mapping key
    mode: int | None = None     # file mode for FILE records


class MutationResult(BaseModel):
    """What ``ensure`` did."""

    record: MutationRecord
    changed: bool = False
    created: bool = False       # the resource did not exist before this call

    @property
    def skipped(self) -> bool:
        return not self.changed
