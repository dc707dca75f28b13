"""templateflow: scaffold projects from templates.

Usage::

    from templateflow import create_default_pipeline

    result = await create_default_pipeline().execute(
        "user/repo#main",
        output_dir="./my-app",
        context={"variables": {"project_name": "my-app"}},
    )
    if result.success:
        print(result.value.stats.files_processed)
"""

from templateflow.config import PipelineConfig, VariableDelimiters
from templateflow.pipeline import (
    PipelineDependencies,
    PipelineStage,
    TemplatePipeline,
    create_default_pipeline,
    create_pipeline,
)
from templateflow.result import Err, Ok, Result, TemplateError, TemplateErrorCode

__all__ = [
    "create_pipeline",
    "create_default_pipeline",
    "TemplatePipeline",
    "PipelineDependencies",
    "PipelineStage",
    "PipelineConfig",
    "VariableDelimiters",
    "Ok",
    "Err",
    "Result",
    "TemplateError",
    "TemplateErrorCode",
]
