"""arq worker settings module.

Import path for arq CLI: arq gartic.workers.settings.WorkerSettings
"""

from __future__ import annotations

from gartic.workers.sweeper_worker import WorkerSettings

__all__ = ["WorkerSettings"]
