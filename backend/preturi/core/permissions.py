"""
Контексты представлений × действия.
Vanzari: продажи (обычное редактирование), Receptie: приёмка, Department: техники,
Curier: курьер. Receptie и Department могут править заблокированные tăvițe.
"""
from enum import Enum
from typing import Optional


class ViewContext(str, Enum):
    VANZARI = "vanzari"
    RECEPTIE = "receptie"
    DEPARTMENT = "department"
    CURIER = "curier"


class Action(str, Enum):
    """Действия, доступ к которым зависит от представления."""
    EDIT_ITEMS = "EDIT_ITEMS"              # добавление/правка/удаление позиций
    EDIT_LOCKED_TRAY = "EDIT_LOCKED_TRAY"  # правка после отправки (office_direct / curier_trimis)
    MOVE_INSTRUMENT = "MOVE_INSTRUMENT"    # перенос группы инструмента между tăvițe
    DISPATCH = "DISPATCH"                  # отправка tăvițe в департаменты
    STAGE_TRANSITION = "STAGE_TRANSITION"  # IN LUCRU / FINALIZATA / ...
    TOGGLE_LOCK = "TOGGLE_LOCK"            # флаги доставки


ACTION_VIEWS = {
    Action.EDIT_ITEMS: [ViewContext.VANZARI, ViewContext.RECEPTIE, ViewContext.DEPARTMENT],
    Action.EDIT_LOCKED_TRAY: [ViewContext.RECEPTIE, ViewContext.DEPARTMENT],
    Action.MOVE_INSTRUMENT: [ViewContext.VANZARI, ViewContext.RECEPTIE, ViewContext.DEPARTMENT],
    Action.DISPATCH: [ViewContext.VANZARI, ViewContext.RECEPTIE, ViewContext.CURIER],
    Action.STAGE_TRANSITION: [ViewContext.DEPARTMENT],
    Action.TOGGLE_LOCK: [ViewContext.VANZARI, ViewContext.RECEPTIE, ViewContext.CURIER],
}


def parse_view(view: Optional[str]) -> ViewContext:
    """Неизвестное или пустое значение: обычный контекст продаж."""
    if not view:
        return ViewContext.VANZARI
    try:
        return ViewContext(view.strip().lower())
    except ValueError:
        return ViewContext.VANZARI


def can_perform(view: ViewContext, action: Action) -> bool:
    return view in ACTION_VIEWS.get(action, [])


def can_bypass_lock(view: ViewContext) -> bool:
    return can_perform(view, Action.EDIT_LOCKED_TRAY)
