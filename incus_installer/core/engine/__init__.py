"""
Engine — stages, the pipeline executor and run-scoped rollback.
"""

from incus_installer.core.engine.executor import PipelineExecutor, generate_run_id  # noqa: F401
from incus_installer.core.engine.rollback import RollbackRegistry  # noqa: F401
from incus_installer.core.engine.stage import Stage, StageContext  # noqa: F401
