from cdcsource.orchestration.source import CapturePlan, IncrementalSource, build_plan

__all__ = ["CapturePlan", "IncrementalSource", "build_plan"]
