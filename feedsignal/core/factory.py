from typing import Dict, Any

from .base import PipelineStage, StageResources
from ..steps.classify import ClassifyStage
from ..steps.deduplicate import DeduplicateStage
from ..steps.signal import SignalStage


class StageFactory:
    _registry = {
        "classify": ClassifyStage,
        "deduplicate": DeduplicateStage,
        "signal": SignalStage,
    }

    @classmethod
    def register(cls, name: str, stage_class):
        cls._registry[name] = stage_class

    @classmethod
    def create(cls, stage_def: Dict[str, Any], resources: StageResources) -> PipelineStage:
        stage_type = stage_def["type"]
        stage_config = stage_def.get("settings", {})

        stage_class = cls._registry.get(stage_type)
        if not stage_class:
            raise ValueError(f"Stage type '{stage_type}' not registered.")

        return stage_class(stage_config, resources)
