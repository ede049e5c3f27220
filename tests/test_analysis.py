from __future__ import annotations

import json
import logging

import pytest
from langchain_core.tools import tool

from atom_reconciler import InMemoryContentProvider, ToolRegistry
from atom_reconciler.concepts import extract_assertions, extract_domain_concepts, split_identifier
from atom_reconciler.context import ContextBuilder, order_tests_by_dependency
from atom_reconciler.dependencies import build_import_graph, topological_file_order
from atom_reconciler.docs_index import build_docs_index, extract_keywords, find_related_docs
from atom_reconciler.evidence import (
    extract_api_endpoints,
    extract_documentation_evidence,
    extract_evidence,
    extract_ui_components,
)
from atom_reconciler.models import EvidenceAnalysis, EvidenceItem, EvidenceType, IssueSeverity, OrphanTestInfo
from atom_reconciler.quality import QUALITY_DIMENSIONS, analyze_test_quality, score_test_source

STRONG_SPEC = """// @atom IA-001
it('rejects an empty cart', () => {
  // empty carts cannot be checked out
  expect(() => checkout([])).toThrow('empty cart');
});
// @atom IA-002
it('returns zero total for no items', () => {
  // total of nothing is zero
  expect(total([])).toBe(0);
});
"""

WEAK_SPEC = """it('exists', () => {
  expect(service).toBeDefined();
  const seed = Math.random();
  expect(seed).toBeTruthy();
});
"""


def test_strong_test_file_passes_every_dimension() -> None:
    score = score_test_source(STRONG_SPEC, "src/cart.spec.ts")
    assert score.passed
    assert score.issues == []
    assert score.overall_score == pytest.approx(100.0)
    assert set(score.dimensions) == set(QUALITY_DIMENSIONS)


def test_weak_test_file_reports_issues() -> None:
    score = score_test_source(WEAK_SPEC, "src/service.spec.ts")
    assert not score.passed
    assert score.overall_score < 70
    by_dimension = {issue.dimension: issue for issue in score.issues}
    assert by_dimension["intent_fidelity"].severity == IssueSeverity.CRITICAL
    assert by_dimension["no_vacuous_tests"].score == 0.0
    assert "determinism" in by_dimension


def test_integration_mocks_lower_authenticity() -> None:
    content = "jest.mock('../db');\nit('saves', () => { expect(save()).toBe(1); });\n"
    assert score_test_source(content, "test/orders.integration.spec.ts").dimensions[
        "integration_test_authenticity"
    ] == pytest.approx(0.8)
    assert score_test_source(content, "test/orders.spec.ts").dimensions["integration_test_authenticity"] == 1.0


def test_quality_is_projected_per_file_and_skips_missing(caplog: pytest.LogCaptureFixture) -> None:
    provider = InMemoryContentProvider({"src/cart.spec.ts": STRONG_SPEC})
    tests = [
        OrphanTestInfo(file_path="src/cart.spec.ts", test_name="rejects an empty cart", line_number=2),
        OrphanTestInfo(file_path="src/cart.spec.ts", test_name="returns zero total for no items", line_number=6),
        OrphanTestInfo(file_path="src/gone.spec.ts", test_name="vanished", line_number=1),
    ]
    with caplog.at_level(logging.WARNING, logger="atom_reconciler.quality"):
        scores = analyze_test_quality(tests, provider)

    assert set(scores) == {"src/cart.spec.ts:rejects an empty cart", "src/cart.spec.ts:returns zero total for no items"}
    assert "src/gone.spec.ts" in caplog.text


def test_split_identifier_handles_mixed_styles() -> None:
    assert split_identifier("validateUserLogin") == ["validate", "user", "login"]
    assert split_identifier("HTTPServer_error") == ["http", "server", "error"]


def test_domain_concepts_prefer_name_hits() -> None:
    concepts = extract_domain_concepts("should validate payment", "expect(orders).toHaveLength(1); updatedAt")
    assert concepts[:2] == ["payment", "validate"]
    assert "order" in concepts
    assert "update" in concepts


def test_extract_assertions_limit() -> None:
    code = "\n".join(f"expect(x{i}).toBe({i});" for i in range(8))
    assertions = extract_assertions(code)
    assert len(assertions) == 5
    assert assertions[0] == "expect(x0).toBe(0)"


def test_docs_index_keywords_and_cap() -> None:
    markdown = "# Checkout flow\nUse `submitOrder` to pay.\n**Refunds** are manual.\n## Errors\n"
    assert extract_keywords(markdown) == ["Checkout flow", "Errors", "submitOrder", "Refunds"]

    provider = InMemoryContentProvider({f"docs/page{i}.md": f"# Page {i}\nbody" for i in range(5)})
    chunks = build_docs_index(provider, "docs", max_chunks=3)
    assert [chunk.title for chunk in chunks] == ["Page 0", "Page 1", "Page 2"]
    assert build_docs_index(provider, "missing") == []


def test_find_related_docs_ranks_by_hits() -> None:
    provider = InMemoryContentProvider(
        {
            "docs/auth.md": "# Login\n`session` and **token** handling",
            "docs/cart.md": "# Cart\n**checkout**",
        }
    )
    chunks = build_docs_index(provider)
    assert find_related_docs(["login", "token"], chunks) == ["docs/auth.md"]
    assert find_related_docs([], chunks) == []


def test_api_endpoints_nest_then_express() -> None:
    nest = """@Controller('orders')
export class OrdersController {
  @Get(':id')
  async findOne(id: string) {}

  @Post()
  create() {}
}
"""
    items = extract_api_endpoints("src/orders.controller.ts", nest)
    assert [item.name for item in items] == ["GET /orders/:id", "POST /orders"]
    assert items[0].metadata["handler"] == "findOne"

    express = "router.get('/health', handler);\napp.post('/orders', create);\n"
    assert [item.name for item in extract_api_endpoints("src/app.js", express)] == ["GET /health", "POST /orders"]


def test_ui_components_require_jsx_files() -> None:
    component = "export default function CheckoutForm() {\n  return (<form><input /></form>);\n}\n"
    items = extract_ui_components("src/CheckoutForm.tsx", component)
    assert [item.name for item in items] == ["CheckoutForm"]
    assert items[0].metadata["has_form"] is True
    assert extract_ui_components("src/CheckoutForm.ts", component) == []

    evidence = extract_evidence("src/CheckoutForm.tsx", component)
    assert [item.type for item in evidence] == [EvidenceType.UI_COMPONENT]


def test_documentation_sections_skip_boilerplate_and_short_text() -> None:
    body = "Customers can pay with a saved card and receive an emailed receipt afterwards."
    markdown = f"# Payments\n{body}\n## Installation\n{body}\n## Notes\nshort\n"
    items = extract_documentation_evidence("docs/payments.md", markdown)
    assert [item.name for item in items] == ["Payments"]
    assert items[0].metadata["heading_level"] == 1


def test_topological_order_and_cycles(caplog: pytest.LogCaptureFixture) -> None:
    provider = InMemoryContentProvider(
        {
            "src/app.ts": "import { svc } from './service';",
            "src/service.ts": "import { db } from './db';",
            "src/db.ts": "export const db = 1;",
        }
    )
    graph = build_import_graph(["src/app.ts", "src/service.ts", "src/db.ts"], provider)
    assert topological_file_order(graph) == ["src/db.ts", "src/service.ts", "src/app.ts"]

    cyclic = {"a.ts": {"b.ts"}, "b.ts": {"a.ts"}, "c.ts": set()}
    with caplog.at_level(logging.WARNING, logger="atom_reconciler.dependencies"):
        assert topological_file_order(cyclic) == ["c.ts", "a.ts", "b.ts"]
    assert "cycles" in caplog.text


def test_order_tests_by_dependency_is_stable() -> None:
    app = OrphanTestInfo(file_path="src/app.spec.ts", test_name="a", line_number=1, related_source_files=["src/app.ts"])
    db = OrphanTestInfo(file_path="src/db.spec.ts", test_name="d", line_number=1, related_source_files=["src/db.ts"])
    loose = OrphanTestInfo(file_path="misc.spec.ts", test_name="m", line_number=1)
    order = ["src/db.ts", "src/service.ts", "src/app.ts"]

    assert order_tests_by_dependency([loose, app, db], order) == [db, app, loose]
    assert order_tests_by_dependency([loose, app, db], []) == [loose, app, db]


def _test(name: str = "validates payment token") -> OrphanTestInfo:
    return OrphanTestInfo(
        file_path="src/pay.spec.ts",
        test_name=name,
        line_number=1,
        test_code="it('validates payment token', () => {\n  expect(result).toThrow('invalid token');\n});",
    )


def test_context_builder_falls_back_to_heuristics() -> None:
    builder = ContextBuilder(provider=InMemoryContentProvider({}))
    analysis = builder.analyze_test(_test())
    assert analysis.summary.startswith("Test 'validates payment token'")
    assert analysis.domain_concepts[:3] == ["token", "payment", "validate"]
    assert "Assertions:" in analysis.raw_context


def test_context_builder_prefers_tool_then_service(caplog: pytest.LogCaptureFixture) -> None:
    @tool("get_test_analysis")
    def good_tool(root_directory: str, file_path: str, test_name: str) -> str:
        """Return a canned analysis."""
        return json.dumps({"summary": f"tool: {test_name}", "domain_concepts": ["payment"]})

    @tool("get_test_analysis")
    def broken_tool(root_directory: str, file_path: str, test_name: str) -> str:
        """Always fails."""
        raise RuntimeError("analysis backend offline")

    class Service:
        def analyze_test(self, test: OrphanTestInfo) -> dict:
            return {"summary": f"service: {test.test_name}"}

    provider = InMemoryContentProvider({})
    via_tool = ContextBuilder(provider=provider, tools=ToolRegistry([good_tool]), analysis_service=Service())
    assert via_tool.analyze_test(_test()).summary == "tool: validates payment token"

    via_service = ContextBuilder(provider=provider, tools=ToolRegistry([broken_tool]), analysis_service=Service())
    with caplog.at_level(logging.WARNING, logger="atom_reconciler.context"):
        assert via_service.analyze_test(_test()).summary == "service: validates payment token"
    assert "falling back" in caplog.text


def test_context_builder_parallel_results_match_sequential() -> None:
    tests = [_test(f"case {i} validates payment") for i in range(6)]
    evidence = [
        EvidenceItem(type=EvidenceType.API_ENDPOINT, file_path="src/pay.ts", name="POST /pay", metadata={"method": "POST", "route": "/pay"})
    ]
    provider = InMemoryContentProvider({})

    sequential = ContextBuilder(provider=provider).build(tests, evidence)
    parallel = ContextBuilder(provider=provider, max_workers=4).build(tests, evidence)

    assert sequential == parallel
    assert list(sequential[0]) == [test.key for test in tests]
    assert list(sequential[1]) == ["api_endpoint:src/pay.ts:POST /pay"]
    assert isinstance(sequential[1]["api_endpoint:src/pay.ts:POST /pay"], EvidenceAnalysis)
