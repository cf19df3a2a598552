from enum import Enum

from preturi.config import settings
from preturi.entities import normalize_name


class StageAction(str, Enum):
    IN_LUCRU = "in_lucru"
    FINALIZARE = "finalizare"
    ASTEPT_PIESE = "astept_piese"
    IN_ASTEPTARE = "in_asteptare"


STAGE_NAMES: dict[StageAction, str] = {
    StageAction.IN_LUCRU: "IN LUCRU",
    StageAction.FINALIZARE: "FINALIZATA",
    StageAction.ASTEPT_PIESE: "ASTEPT PIESE",
    StageAction.IN_ASTEPTARE: "IN ASTEPTARE",
}

# Вид pipeline -> допустимые действия техника
REPAIR = "repair"
WAITING = "waiting"

ALLOWED_ACTIONS: dict[str, list[StageAction]] = {
    REPAIR: [StageAction.IN_LUCRU, StageAction.FINALIZARE, StageAction.ASTEPT_PIESE],
    WAITING: [StageAction.IN_LUCRU, StageAction.FINALIZARE, StageAction.IN_ASTEPTARE],
}


def pipeline_kind(pipeline_name: str) -> str:
    key = normalize_name(pipeline_name)
    if key in {normalize_name(n) for n in settings.repair_pipeline_list}:
        return REPAIR
    if key in {normalize_name(n) for n in settings.waiting_pipeline_list}:
        return WAITING
    return ""


def can_apply(pipeline_name: str, action: StageAction) -> bool:
    """IN LUCRU и FINALIZATA доступны любому pipeline департамента."""
    kind = pipeline_kind(pipeline_name)
    if not kind:
        return action in (StageAction.IN_LUCRU, StageAction.FINALIZARE)
    return action in ALLOWED_ACTIONS.get(kind, [])


def stage_name_for(action: StageAction) -> str:
    return STAGE_NAMES[action]
