"""
Image Attachment Pipeline

After the document's blocks exist remotely, every image block is still an
empty placeholder. This module uploads the local image behind each one and
binds it to the block with display dimensions that suit its aspect ratio.

Responsibilities
----------------
- Extract image references from Markdown in document order
- Measure PNG/GIF rasters and SVG sources, and pick an SVG rescale factor
- Clamp display sizes per aspect-ratio class
- Pair the i-th remote image block with the i-th local reference, upload,
  then patch; a failed image is logged and skipped
"""

from __future__ import annotations

import logging
import re
import struct
from typing import Awaitable, Callable, Dict, List, NamedTuple, Optional, Tuple
from urllib.parse import unquote

from ..core.errors import SyncError
from ..feishu.api_client import FeishuClient
from ..markdown.preprocessor import convert_embed_images
from ..models.blocks import BlockType
from ..models.documents import ImagePayload
from ..vault import Vault

logger = logging.getLogger("sync.images")

MARKDOWN_IMAGE_RE = re.compile(r"!\[([^\]]*)\]\(([^)\s]+)(?:\s+\"([^\"]*)\")?\)")

DEFAULT_WIDTH = 800
DEFAULT_HEIGHT = 600
SVG_MAX_SIZE = 2000

_SVG_WIDTH_RE = re.compile(r"(?<![\w-])width\s*=\s*[\"']?(\d+(?:\.\d+)?)(?:px|pt|pc|mm|cm|in)?[\"']?", re.I)
_SVG_HEIGHT_RE = re.compile(r"(?<![\w-])height\s*=\s*[\"']?(\d+(?:\.\d+)?)(?:px|pt|pc|mm|cm|in)?[\"']?", re.I)
_SVG_VIEWBOX_RE = re.compile(r"viewBox\s*=\s*[\"']([^\"']*)[\"']", re.I)

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class RasterImage(NamedTuple):
    """PNG bytes plus pixel dimensions."""
    content: bytes
    width: int
    height: int


# Renders SVG text at a scale factor into PNG bytes
SvgRasterizer = Callable[[str, float], Awaitable[bytes]]


# ---------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------

def extract_image_payloads(markdown: str, base_path: Optional[str] = None) -> List[ImagePayload]:
    """
    List every image referenced by ``markdown`` in document order.

    Embed-style images are normalized first, so both syntaxes count. Local
    paths are joined to ``base_path``; ``http`` URLs are kept as-is.
    """
    payloads: List[ImagePayload] = []
    for match in MARKDOWN_IMAGE_RE.finditer(convert_embed_images(markdown)):
        path = unquote(match.group(2))
        file_name = path.rsplit("/", 1)[-1] or path
        if base_path and not path.startswith("http"):
            source = f"{base_path.rstrip('/')}/{path}"
        else:
            source = path
        payloads.append(
            ImagePayload(
                source_path=source,
                file_name=file_name,
                ordinal_position=len(payloads),
                alt=match.group(1),
            )
        )
    return payloads


# ---------------------------------------------------------------------
# Measuring
# ---------------------------------------------------------------------

def raster_dimensions(data: bytes) -> Optional[Tuple[int, int]]:
    """Read (width, height) from a PNG or GIF header; None for other formats."""
    if data.startswith(_PNG_SIGNATURE) and len(data) >= 24 and data[12:16] == b"IHDR":
        width, height = struct.unpack(">II", data[16:24])
        return width, height
    if data[:6] in (b"GIF87a", b"GIF89a") and len(data) >= 10:
        width, height = struct.unpack("<HH", data[6:10])
        return width, height
    return None


def is_svg(file_name: str) -> bool:
    return file_name.lower().endswith(".svg")


def png_name_for_svg(file_name: str) -> str:
    return re.sub(r"\.svg$", "", file_name, flags=re.I) + "_converted.png"


def parse_svg_dimensions(svg: str) -> Tuple[Optional[float], Optional[float]]:
    """
    Width and height of an SVG document.

    Explicit ``width``/``height`` attributes win; ``viewBox`` fills in
    whichever is missing. Non-positive values are reported as None.
    """
    width_match = _SVG_WIDTH_RE.search(svg)
    height_match = _SVG_HEIGHT_RE.search(svg)
    width = float(width_match.group(1)) if width_match else None
    height = float(height_match.group(1)) if height_match else None

    if not width or not height:
        viewbox = _SVG_VIEWBOX_RE.search(svg)
        if viewbox:
            values = viewbox.group(1).replace(",", " ").split()
            if len(values) >= 4:
                try:
                    width = width or float(values[2])
                    height = height or float(values[3])
                except ValueError:
                    pass

    return (width if width and width > 0 else None, height if height and height > 0 else None)


def recommended_svg_scale(width: float, height: float) -> float:
    """Upscale small drawings so they stay crisp; cap large ones at 2000 px."""
    largest = max(width, height)
    if largest <= 100:
        return 8.0
    if largest <= 200:
        return 6.0
    if largest <= 400:
        return 4.0
    if largest <= 800:
        return 2.0
    if width > SVG_MAX_SIZE or height > SVG_MAX_SIZE:
        return min(SVG_MAX_SIZE / width, SVG_MAX_SIZE / height)
    return 1.0


def clamp_display_size(width: float, height: float) -> Tuple[int, int]:
    """
    Fit (width, height) inside the box for its aspect-ratio class.

    ===============  ============
    aspect ratio     max box
    ===============  ============
    > 4              2400 x 600
    > 2              2000 x 800
    < 0.8            1000 x 2500
    otherwise        1200 x 800
    ===============  ============
    """
    aspect = width / height
    if aspect > 4:
        max_width, max_height = 2400, 600
    elif aspect > 2:
        max_width, max_height = 2000, 800
    elif aspect < 0.8:
        max_width, max_height = 1000, 2500
    else:
        max_width, max_height = 1200, 800

    if width > max_width or height > max_height:
        ratio = min(max_width / width, max_height / height)
        width, height = width * ratio, height * ratio
    return int(round(width)), int(round(height))


def compute_display_size(payload: ImagePayload) -> Tuple[int, int]:
    """
    Display size for one image.

    Measured dimensions are used when known, then SVG rescale metadata,
    then 800x600; the result is clamped by :func:`clamp_display_size`.
    """
    if payload.width and payload.height:
        width, height = float(payload.width), float(payload.height)
    elif payload.original_width and payload.original_height and payload.scale_factor:
        width = payload.original_width * payload.scale_factor
        height = payload.original_height * payload.scale_factor
    else:
        width, height = float(DEFAULT_WIDTH), float(DEFAULT_HEIGHT)
    return clamp_display_size(width, height)


# ---------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------

class ImageAttachmentPipeline:
    """
    Uploads local images into an already-built remote document.

    Parameters
    ----------
    client : FeishuClient
        Remote API client.

    vault : Vault
        Source of image bytes.

    image_cache : Optional[Dict[str, RasterImage]]
        Pre-rendered images keyed by file name (Mermaid diagrams). Checked
        before the vault.

    svg_rasterizer : Optional[SvgRasterizer]
        Converts SVG sources to PNG. Without one, SVG images are skipped.
    """

    def __init__(
        self,
        client: FeishuClient,
        vault: Vault,
        image_cache: Optional[Dict[str, RasterImage]] = None,
        svg_rasterizer: Optional[SvgRasterizer] = None,
    ) -> None:
        self.client = client
        self.vault = vault
        self.image_cache = image_cache if image_cache is not None else {}
        self.svg_rasterizer = svg_rasterizer

    async def load(self, payload: ImagePayload) -> Tuple[bytes, str, ImagePayload]:
        """
        Read the bytes for ``payload``.

        Returns
        -------
        Tuple[bytes, str, ImagePayload]
            Upload content, upload file name, and the payload updated with
            measured dimensions or SVG rescale metadata.

        Raises
        ------
        FileNotFoundError
            If the image is neither cached nor in the vault.
        """
        cached = self.image_cache.get(payload.file_name)
        if cached is not None:
            measured = payload.model_copy(update={"width": cached.width, "height": cached.height})
            return cached.content, payload.file_name, measured

        path = self.vault.locate(payload.source_path)
        if path is None:
            raise FileNotFoundError(payload.source_path)

        if is_svg(payload.file_name):
            if self.svg_rasterizer is None:
                raise ValueError(f"No SVG rasterizer configured for {payload.file_name}")
            svg = self.vault.read_text(path)
            width, height = parse_svg_dimensions(svg)
            width = width or DEFAULT_WIDTH
            height = height or DEFAULT_HEIGHT
            scale = recommended_svg_scale(width, height)
            content = await self.svg_rasterizer(svg, scale)
            updated = payload.model_copy(
                update={"original_width": width, "original_height": height, "scale_factor": scale}
            )
            return content, png_name_for_svg(payload.file_name), updated

        content = self.vault.read_bytes(path)
        dimensions = raster_dimensions(content)
        if dimensions and dimensions[0] > 0 and dimensions[1] > 0:
            payload = payload.model_copy(update={"width": dimensions[0], "height": dimensions[1]})
        return content, payload.file_name, payload

    async def attach(
        self,
        document_id: str,
        payloads: List[ImagePayload],
        progress: Optional[Callable[[str], None]] = None,
    ) -> int:
        """
        Bind each payload to the remote image block at the same ordinal.

        Returns
        -------
        int
            Number of images attached.
        """
        if not payloads:
            return 0

        blocks = await self.client.get_blocks(document_id)
        image_blocks = [b for b in blocks if b.block_type is BlockType.IMAGE]
        if not image_blocks:
            logger.info("Document %s has no image blocks", document_id)
            return 0
        if len(image_blocks) != len(payloads):
            logger.warning(
                "Document %s has %d image blocks for %d local images",
                document_id,
                len(image_blocks),
                len(payloads),
            )

        attached = 0
        for number, (payload, block) in enumerate(zip(payloads, image_blocks), start=1):
            if progress:
                progress(f"Processing image {number}/{len(payloads)}: {payload.file_name}")
            try:
                content, upload_name, measured = await self.load(payload)
                token = await self.client.upload_asset(
                    content, upload_name, document_id, block.block_id
                )
                width, height = compute_display_size(measured)
                await self.client.patch_image_block(
                    document_id, block.block_id, token, width, height
                )
            except (SyncError, OSError, ValueError) as exc:
                logger.warning("Image %s could not be attached: %s", payload.file_name, exc)
                if progress:
                    progress(f"Image {payload.file_name} failed: {exc}")
                continue
            attached += 1

        logger.info("Attached %d/%d images to %s", attached, len(payloads), document_id)
        return attached
