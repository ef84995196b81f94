"""Orchestration services."""

from regwatch.services.pipeline import PipelineResult, RegulatoryPipeline

__all__ = ["PipelineResult", "RegulatoryPipeline"]
