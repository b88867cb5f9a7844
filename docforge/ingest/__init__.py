"""DocForge Ingestion — spreadsheet parsing, coercion, reference lookup, templates."""

from docforge.ingest.pipeline import IngestionPipeline, ParseResult  # noqa: F401
from docforge.ingest.references import ReferenceResolver  # noqa: F401
from docforge.ingest.template import build_template  # noqa: F401

__all__ = ["IngestionPipeline", "ParseResult", "ReferenceResolver", "build_template"]
