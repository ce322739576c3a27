"""
External collaborators the pipeline depends on, bundled for injection.

Defaults point at the production clients; tests swap in fakes.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from .. import deepseek, flux, gemini, storage
from ..kie import KieRenderClient


@dataclass
class Collaborators:
    analyze_image: Callable[..., Awaitable[Any]] = gemini.analyze_image
    interpret: Callable[..., Awaitable[Any]] = gemini.interpret
    write_storyboard: Callable[..., Awaitable[list[str]]] = deepseek.write_storyboard
    refine_scene: Callable[..., Awaitable[str]] = deepseek.refine_scene
    render_preview: Callable[[str], Awaitable[str]] = flux.render_preview
    enhance_image: Callable[..., Awaitable[str]] = flux.enhance_image
    upload_image: Callable[..., Awaitable[str]] = storage.upload_image
    render_client: Any = field(default_factory=KieRenderClient)
