"""
Director Pipeline

Orchestration from one uploaded image to an approved multi-scene storyboard:
  Fan-out   — one cached raw analysis → every persona's pitch, concurrently
  Job       — quality gate → storyboard → refinement → production approval
  Render    — external render jobs polled with timeout, cancel and retention
"""

from .models import Stage, SceneStatus, RenderJobStatus

__all__ = [
    "Stage",
    "SceneStatus",
    "RenderJobStatus",
]
