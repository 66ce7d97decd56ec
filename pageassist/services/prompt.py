"""
Prompt Formatter - turns a page snapshot into one structured prompt block.

Output is bounded: table rows and metric counts are capped, and metrics are
deduplicated by a short content key.
"""

from pageassist.models.api import MetricSnapshot, PageSnapshot

SYSTEM_PROMPT = """You are an analytics expert for sellers on the Ozon marketplace. \
Your job is to analyze data taken from an Ozon analytics page and answer the user's questions.

Rules:
1. Answer in the language the user writes in
2. Analyze the provided data and give concrete answers
3. If the data is insufficient, say so honestly
4. Use numbers and percentages from the data where appropriate
5. Give the seller practical recommendations
6. Be brief but informative
7. Highlight key figures in bold (using **text**)
8. If you notice problems or anomalies in the data, point them out"""

METRIC_KEY_LENGTH = 100
TURN_SEPARATOR = "\n\n---\n\n"


def metric_key(metric: MetricSnapshot) -> str:
    """Deduplication key for a metric: its first 100 characters."""
    text = metric.content or metric.context or metric.value or ""
    return text[:METRIC_KEY_LENGTH]


def _metric_line(metric: MetricSnapshot) -> str | None:
    if metric.value and metric.context:
        return metric.context
    if metric.content:
        return metric.content
    return None


class PromptFormatter:
    """Formats page snapshots for the LLM gateway."""

    def __init__(self, max_table_rows: int = 20, max_metrics: int = 50):
        self.max_table_rows = max_table_rows
        self.max_metrics = max_metrics

    def format_snapshot(self, snapshot: PageSnapshot) -> str:
        """Render the snapshot as a markdown block. Empty sections are omitted."""
        lines = [
            "## Page data",
            "",
            f"**URL:** {snapshot.url}",
            f"**Title:** {snapshot.page_title}",
            f"**Captured at:** {snapshot.timestamp}",
            "",
        ]

        if snapshot.texts:
            lines.append("### Headings:")
            lines.extend(f"- {text.type}: {text.content}" for text in snapshot.texts)
            lines.append("")

        if snapshot.tables:
            lines.append("### Tables:")
            for i, table in enumerate(snapshot.tables, start=1):
                lines.append("")
                lines.append(f"**Table {i}:**")
                if table.headers:
                    lines.append(f"Headers: {' | '.join(table.headers)}")
                if table.rows:
                    lines.append("Rows:")
                    for row in table.rows[: self.max_table_rows]:
                        lines.append(f"  {' | '.join(row)}")
                    hidden = len(table.rows) - self.max_table_rows
                    if hidden > 0:
                        lines.append(f"  ... +{hidden} more rows")
            lines.append("")

        metric_lines = self._metric_lines(snapshot.metrics)
        if metric_lines:
            lines.append("### Metrics:")
            lines.extend(f"- {line}" for line in metric_lines)
            lines.append("")

        if snapshot.charts:
            lines.append("### Charts:")
            for i, chart in enumerate(snapshot.charts, start=1):
                line = f"- Chart {i}:"
                if chart.aria_label:
                    line += f" {chart.aria_label}"
                if chart.title:
                    line += f" {chart.title}"
                if chart.legend:
                    line += f" ({chart.legend})"
                lines.append(line)

        return "\n".join(lines).rstrip("\n") + "\n"

    def _metric_lines(self, metrics: list[MetricSnapshot]) -> list[str]:
        seen: set[str] = set()
        result: list[str] = []
        for metric in metrics:
            if len(result) >= self.max_metrics:
                break
            line = _metric_line(metric)
            if line is None:
                continue
            key = metric_key(metric)
            if key in seen:
                continue
            seen.add(key)
            result.append(line)
        return result

    def build_user_turn(self, snapshot: PageSnapshot, question: str) -> str:
        """The new user turn: page block, separator, then the question."""
        return f"{self.format_snapshot(snapshot)}{TURN_SEPARATOR}**Question:** {question}"
