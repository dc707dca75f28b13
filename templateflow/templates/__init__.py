"""Template collaborators used by the pipeline.

Resolves template identifiers to sources, stages template trees from built-in,
local, GitHub and archive sources, checks their structure, renders them with
Jinja2 and caches remote downloads between runs.

Quick usage::

    from templateflow.templates import TemplateFetcher, TemplateProcessor, TemplateResolver

    resolver = TemplateResolver()
    source = resolver.normalize(resolver.resolve("user/repo#main"))
    fetched = await TemplateFetcher().fetch(source, "/tmp/staging")
    if fetched.success:
        plan = await TemplateProcessor().process(fetched.value.path, "/tmp/my-app", {"project_name": "my-app"})
"""

from templateflow.templates.cache import CacheStats, TemplateCache, get_shared_cache, is_cacheable
from templateflow.templates.fetcher import TemplateFetcher
from templateflow.templates.metadata import TemplateMetadataManager
from templateflow.templates.processor import TemplateProcessor, apply_operations, validate_context
from templateflow.templates.resolver import BUILTIN_TEMPLATE_NAMES, TemplateResolver
from templateflow.templates.validator import TemplateValidator

__all__ = [
    "BUILTIN_TEMPLATE_NAMES",
    "CacheStats",
    "TemplateCache",
    "TemplateFetcher",
    "TemplateMetadataManager",
    "TemplateProcessor",
    "TemplateResolver",
    "TemplateValidator",
    "apply_operations",
    "get_shared_cache",
    "is_cacheable",
    "validate_context",
]
