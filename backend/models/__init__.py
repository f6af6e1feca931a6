from models.user import Role, User, TeacherStudent
from models.content import (
    Level, LevelPrerequisite, Module, ModulePrerequisite,
    Lesson, Step, STEP_CONTENT_TYPES,
)
from models.progress import ProgressStatus, UserProgress, LessonCompletion, Progress
from models.audit import (
    OverrideEntityType, ContentOverride,
    ChangeEntityType, ChangeAction, ChangeLog,
)

__all__ = [
    "Role", "User", "TeacherStudent",
    "Level", "LevelPrerequisite", "Module", "ModulePrerequisite",
    "Lesson", "Step", "STEP_CONTENT_TYPES",
    "ProgressStatus", "UserProgress", "LessonCompletion", "Progress",
    "OverrideEntityType", "ContentOverride",
    "ChangeEntityType", "ChangeAction", "ChangeLog",
]
