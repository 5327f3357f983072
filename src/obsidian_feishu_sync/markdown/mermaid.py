"""
Mermaid Diagrams

The remote service has no diagram block that accepts Mermaid source, so each
```` ```mermaid ```` fence is rendered to PNG by an injected rasterizer,
stored in the run's image cache, and replaced in the Markdown by an image
reference the attachment pipeline later fills from that cache.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional

from ..sync.images import RasterImage

logger = logging.getLogger("sync.mermaid")

MERMAID_RE = re.compile(r"```mermaid\s*\n([\s\S]*?)\n\s*```")

# Renders Mermaid source into a PNG
MermaidRasterizer = Callable[[str], Awaitable[RasterImage]]

_TYPE_KEYWORDS = [
    (("flowchart", "graph"), "flowchart"),
    (("sequencediagram",), "sequence"),
    (("classdiagram",), "class"),
    (("statediagram",), "state"),
    (("erdiagram",), "er"),
    (("gantt",), "gantt"),
    (("pie",), "pie"),
    (("journey",), "journey"),
    (("gitgraph",), "gitgraph"),
]


class MermaidChart(NamedTuple):
    content: str
    file_name: str
    chart_type: str
    start: int
    end: int


def has_mermaid_charts(markdown: str) -> bool:
    return MERMAID_RE.search(markdown) is not None


def detect_mermaid_type(content: str) -> str:
    """Classify a chart by the keywords on its first line."""
    lines = content.split("\n")
    first = lines[0].strip().lower() if lines else ""
    for keywords, chart_type in _TYPE_KEYWORDS:
        if any(keyword in first for keyword in keywords):
            return chart_type
    return "diagram"


def extract_mermaid_charts(markdown: str, timestamp: Optional[int] = None) -> List[MermaidChart]:
    """
    List every non-empty Mermaid fence with a generated PNG file name.

    File names follow ``mermaid-<type>-<timestamp>-<n>.png``; ``timestamp``
    defaults to the current time in milliseconds.
    """
    stamp = timestamp if timestamp is not None else int(time.time() * 1000)
    charts: List[MermaidChart] = []
    for match in MERMAID_RE.finditer(markdown):
        content = match.group(1).strip()
        if not content:
            continue
        chart_type = detect_mermaid_type(content)
        charts.append(
            MermaidChart(
                content=content,
                file_name=f"mermaid-{chart_type}-{stamp}-{len(charts)}.png",
                chart_type=chart_type,
                start=match.start(),
                end=match.end(),
            )
        )
    return charts


async def render_mermaid_charts(
    markdown: str,
    rasterizer: MermaidRasterizer,
    image_cache: Dict[str, RasterImage],
    timestamp: Optional[int] = None,
) -> str:
    """
    Render every chart and swap its fence for an image reference.

    A chart that fails to render keeps its fence and is uploaded as a code
    block.

    Returns
    -------
    str
        The rewritten Markdown.
    """
    charts = extract_mermaid_charts(markdown, timestamp)
    rendered: List[MermaidChart] = []
    for chart in charts:
        try:
            image_cache[chart.file_name] = await rasterizer(chart.content)
        except (RuntimeError, ValueError, OSError) as exc:
            logger.warning("Mermaid %s chart could not be rendered: %s", chart.chart_type, exc)
            continue
        rendered.append(chart)

    for chart in sorted(rendered, key=lambda c: c.start, reverse=True):
        reference = f"![{chart.file_name}]({chart.file_name})"
        markdown = markdown[:chart.start] + reference + markdown[chart.end:]

    if rendered:
        logger.info("Rendered %d/%d Mermaid charts", len(rendered), len(charts))
    return markdown
