"""
Template compilation and rendering for relay payloads.
"""

from .store import RenderContext, RenderedPayload, TemplateStore

__all__ = ["RenderContext", "RenderedPayload", "TemplateStore"]
