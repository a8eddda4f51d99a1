"""
Core domain models.

Re-exports the model classes so callers can write::

    from incus_installer.core.models import InstallationConfig, StageStatus
"""

from incus_installer.core.models.config import (  # noqa: F401
    DEFAULT_BRIDGE,
    DEFAULT_POOL,
    DEFAULT_STORAGE_PATH,
    HostInfo,
    InstallationConfig,
    OSFamily,
)
from incus_installer.core.models.fetch import FetchAttempt, FetchKind, FetchSpec  # noqa: F401
from incus_installer.core.models.mutation import (  # noqa: F401
    MutationKind,
    MutationRecord,
    MutationResult,
)
from incus_installer.core.models.preseed import (  # noqa: F401
    PreseedDocument,
    PreseedNetwork,
    PreseedProfile,
    PreseedStoragePool,
)
from incus_installer.core.models.stage import (  # noqa: F401
    PipelineResult,
    StageOutcome,
    StageStatus,
)
