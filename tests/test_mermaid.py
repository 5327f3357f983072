from unittest.mock import AsyncMock

import pytest

from obsidian_feishu_sync.markdown.mermaid import (
    detect_mermaid_type,
    extract_mermaid_charts,
    has_mermaid_charts,
    render_mermaid_charts,
)
from obsidian_feishu_sync.sync.images import RasterImage

MARKDOWN = """# Flow

```mermaid
graph TD
  A --> B
```

Between

```mermaid
sequenceDiagram
  A->>B: hi
```
"""


class TestDetection:
    def test_has_charts(self):
        assert has_mermaid_charts(MARKDOWN)
        assert not has_mermaid_charts("```python\nprint(1)\n```")

    def test_types(self):
        assert detect_mermaid_type("graph LR\nA-->B") == "flowchart"
        assert detect_mermaid_type("sequenceDiagram") == "sequence"
        assert detect_mermaid_type("erDiagram") == "er"
        assert detect_mermaid_type("mindmap") == "diagram"

    def test_file_names(self):
        charts = extract_mermaid_charts(MARKDOWN, timestamp=1700)
        assert [c.file_name for c in charts] == [
            "mermaid-flowchart-1700-0.png",
            "mermaid-sequence-1700-1.png",
        ]


class TestRendering:
    @pytest.mark.asyncio
    async def test_fences_replaced_and_cached(self):
        """Rendered charts become image references backed by the cache."""
        cache = {}
        rasterizer = AsyncMock(return_value=RasterImage(b"png", 100, 50))
        result = await render_mermaid_charts(MARKDOWN, rasterizer, cache, timestamp=1)

        assert "```mermaid" not in result
        assert "![mermaid-flowchart-1-0.png](mermaid-flowchart-1-0.png)" in result
        assert "![mermaid-sequence-1-1.png](mermaid-sequence-1-1.png)" in result
        assert result.index("flowchart") < result.index("Between") < result.index("sequence")
        assert set(cache) == {"mermaid-flowchart-1-0.png", "mermaid-sequence-1-1.png"}

    @pytest.mark.asyncio
    async def test_failed_chart_stays_code(self):
        """A chart that cannot be rendered keeps its fence."""
        cache = {}
        rasterizer = AsyncMock(side_effect=[RuntimeError("renderer crashed"), RasterImage(b"png", 1, 1)])
        result = await render_mermaid_charts(MARKDOWN, rasterizer, cache, timestamp=1)

        assert "```mermaid\ngraph TD" in result
        assert "![mermaid-sequence-1-1.png](mermaid-sequence-1-1.png)" in result
        assert list(cache) == ["mermaid-sequence-1-1.png"]
