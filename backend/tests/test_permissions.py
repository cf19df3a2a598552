"""Представления и граница операции."""
import pytest

from preturi.core.permissions import Action, ViewContext, can_bypass_lock, can_perform, parse_view

from conftest import SERVICE_FILE_ID


def test_parse_view_defaults_to_sales():
    assert parse_view(None) is ViewContext.VANZARI
    assert parse_view(" Receptie ") is ViewContext.RECEPTIE
    assert parse_view("admin") is ViewContext.VANZARI


def test_lock_bypass_views():
    assert can_bypass_lock(ViewContext.RECEPTIE)
    assert can_bypass_lock(ViewContext.DEPARTMENT)
    assert not can_bypass_lock(ViewContext.VANZARI)
    assert not can_perform(ViewContext.CURIER, Action.EDIT_ITEMS)
    assert can_perform(ViewContext.DEPARTMENT, Action.STAGE_TRANSITION)


@pytest.mark.asyncio
async def test_execute_wraps_success_and_failure(engine):
    ok = await engine.execute(engine.create_tray, SERVICE_FILE_ID, "1")
    assert ok.ok and ok.code == "ok"
    assert ok.value.number == "1"
    failed = await engine.execute(engine.create_tray, "sf-missing", "2")
    assert (failed.ok, failed.code) == (False, "service_file_not_found")
    assert failed.value is None
