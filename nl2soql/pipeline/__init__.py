from .compiler import CompilationResult, CompilationStatus, NL2SOQLPipeline
from .config import configure_logging
from .context import SchemaContext, SchemaContextAssembler, SchemaContextCache
from .errors import CapabilityFailure, DeadlineExceeded, PipelineFailure
from .generator import CandidateQuery, Coder, Planner, QueryPlan
from .grounding import GroundingResult, GroundingService, GroundingSource, GroundingType
from .openai_client import CompletionCapability, OpenAICompletion, OpenAIEmbedder
from .refiner import RepairEngine, RepairOutcome, RepairState
from .run_logger import RunLogger
from .schema_graph import InMemorySchemaGraph, SchemaField, SchemaGraphClient, SchemaObject
from .scorer import EmbeddingCapability, HybridNeighborScorer
from .soql_ast import QueryAst, tolerant_extract
from .validators import Severity, SoqlValidator, ValidationMessage

__all__ = [
    "NL2SOQLPipeline",
    "CompilationResult",
    "CompilationStatus",
    "configure_logging",
    "SchemaContext",
    "SchemaContextAssembler",
    "SchemaContextCache",
    "PipelineFailure",
    "CapabilityFailure",
    "DeadlineExceeded",
    "CandidateQuery",
    "QueryPlan",
    "Planner",
    "Coder",
    "GroundingResult",
    "GroundingService",
    "GroundingSource",
    "GroundingType",
    "CompletionCapability",
    "OpenAICompletion",
    "OpenAIEmbedder",
    "RepairEngine",
    "RepairOutcome",
    "RepairState",
    "RunLogger",
    "InMemorySchemaGraph",
    "SchemaField",
    "SchemaGraphClient",
    "SchemaObject",
    "EmbeddingCapability",
    "HybridNeighborScorer",
    "QueryAst",
    "tolerant_extract",
    "Severity",
    "SoqlValidator",
    "ValidationMessage",
]
