from engines.changelog import ChangelogService
from engines.content import ContentService
from engines.legacy_progress import LegacyProgressService, migrate_legacy_progress
from engines.overrides import OverrideService
from engines.progress import ProgressService
from engines.unlock import UnlockService

__all__ = [
    "ChangelogService",
    "ContentService",
    "LegacyProgressService",
    "OverrideService",
    "ProgressService",
    "UnlockService",
    "migrate_legacy_progress",
]
