"""
Tests for PromptFormatter.
"""

from pageassist.models.api import (
    ChartSnapshot,
    MetricSnapshot,
    PageSnapshot,
    TableSnapshot,
    TextSnapshot,
)
from pageassist.services.prompt import TURN_SEPARATOR, PromptFormatter, metric_key


def snapshot(**fields: object) -> PageSnapshot:
    base: dict[str, object] = {
        "url": "https://seller.ozon.ru/app/analytics",
        "page_title": "Analytics",
        "timestamp": "2026-10-19T10:00:00Z",
    }
    base.update(fields)
    return PageSnapshot(**base)


class TestFormatSnapshot:
    """Tests for format_snapshot."""

    def test_header_only_for_empty_page(self) -> None:
        text = PromptFormatter().format_snapshot(snapshot())

        assert "**URL:** https://seller.ozon.ru/app/analytics" in text
        assert "**Title:** Analytics" in text
        assert "### Tables:" not in text
        assert "### Metrics:" not in text
        assert "### Charts:" not in text
        assert "### Headings:" not in text

    def test_table_rows_are_capped(self) -> None:
        rows = [[f"SKU-{i}", str(i)] for i in range(25)]
        table = TableSnapshot(headers=["SKU", "Orders"], rows=rows)

        text = PromptFormatter(max_table_rows=20).format_snapshot(snapshot(tables=[table]))

        assert "**Table 1:**" in text
        assert "Headers: SKU | Orders" in text
        assert "  SKU-19 | 19" in text
        assert "SKU-20" not in text
        assert "  ... +5 more rows" in text

    def test_no_overflow_line_at_cap(self) -> None:
        table = TableSnapshot(rows=[["a"]] * 20)

        text = PromptFormatter(max_table_rows=20).format_snapshot(snapshot(tables=[table]))

        assert "more rows" not in text

    def test_metrics_deduplicated_and_capped(self) -> None:
        metrics = [MetricSnapshot(content="Revenue 1 000 000")] * 3 + [
            MetricSnapshot(content=f"Metric {i}") for i in range(60)
        ]

        text = PromptFormatter(max_metrics=50).format_snapshot(snapshot(metrics=metrics))

        assert text.count("Revenue 1 000 000") == 1
        assert text.count("\n- Metric ") == 49

    def test_metric_prefers_context_when_value_present(self) -> None:
        metric = MetricSnapshot(value="42", context="Orders: 42 this week", content="42")

        text = PromptFormatter().format_snapshot(snapshot(metrics=[metric]))

        assert "- Orders: 42 this week" in text

    def test_empty_metrics_skipped(self) -> None:
        text = PromptFormatter().format_snapshot(snapshot(metrics=[MetricSnapshot()]))

        assert "### Metrics:" not in text

    def test_headings_and_charts(self) -> None:
        page = snapshot(
            texts=[TextSnapshot(type="h1", content="Sales overview")],
            charts=[ChartSnapshot(aria_label="Orders by day", legend="Orders")],
        )

        text = PromptFormatter().format_snapshot(page)

        assert "- h1: Sales overview" in text
        assert "- Chart 1: Orders by day (Orders)" in text


class TestBuildUserTurn:
    def test_question_follows_separator(self) -> None:
        turn = PromptFormatter().build_user_turn(snapshot(), "Why did orders drop?")

        page_block, question = turn.split(TURN_SEPARATOR)
        assert page_block.startswith("## Page data")
        assert question == "**Question:** Why did orders drop?"


class TestMetricKey:
    def test_truncates_to_one_hundred_characters(self) -> None:
        assert len(metric_key(MetricSnapshot(content="x" * 250))) == 100

    def test_falls_back_to_context(self) -> None:
        assert metric_key(MetricSnapshot(context="ctx")) == "ctx"
