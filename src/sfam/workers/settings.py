"""arq worker settings module.

Import path for arq CLI: arq sfam.workers.settings.WorkerSettings
"""

from __future__ import annotations

from sfam.workers.scheduler import WorkerSettings

__all__ = ["WorkerSettings"]
