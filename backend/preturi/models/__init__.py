from preturi.core.database import Base
from preturi.models.service_file import ServiceFile
from preturi.models.tray import Tray
from preturi.models.tray_item import TrayItem
from preturi.models.catalog import Department, Instrument, Service, Part
from preturi.models.pipeline import Pipeline, Stage, PipelineItem

__all__ = [
    "Base",
    "Department",
    "Instrument",
    "Part",
    "Pipeline",
    "PipelineItem",
    "Service",
    "ServiceFile",
    "Stage",
    "Tray",
    "TrayItem",
]
