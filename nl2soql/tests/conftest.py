import sys
from pathlib import Path

import pytest

# Ensure project root is on path for imports when running pytest from repo root
ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from nl2soql.pipeline.context import SchemaContext  # noqa: E402
from nl2soql.pipeline.schema_graph import InMemorySchemaGraph  # noqa: E402

SAMPLE_SCHEMA = Path(__file__).resolve().parents[1] / "sample_schema.json"


@pytest.fixture
def graph() -> InMemorySchemaGraph:
    return InMemorySchemaGraph.from_json(SAMPLE_SCHEMA)


@pytest.fixture
def full_context(graph: InMemorySchemaGraph) -> SchemaContext:
    return SchemaContext.from_objects(list(graph.objects().values()))
