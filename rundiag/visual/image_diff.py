"""Screenshot comparison and hotspot clustering.

Compares two equally sized RGBA rasters with a perceptual color distance
(YIQ, as used by pixelmatch) instead of byte equality, so anti-aliasing
noise and imperceptible color shifts do not register as changes.  The
resulting boolean mask is clustered into hotspots with iterative
connected-component labeling; tiny components are dropped as noise and the
rest are tiered by area.

Pure Python, single pass over the pixels for the diff and one more for the
labeling; every pixel is pushed on the flood-fill stack at most once.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from rundiag.config import DiffOptions
from rundiag.errors import DimensionMismatchError
from rundiag.severity import Severity

logger = logging.getLogger(__name__)


# Maximum possible YIQ delta between two colors (black vs. white ~ 35215).
_MAX_YIQ_DELTA: float = 35215.0

_NEIGHBORS_4: Tuple[Tuple[int, int], ...] = ((1, 0), (-1, 0), (0, 1), (0, -1))
_NEIGHBORS_8: Tuple[Tuple[int, int], ...] = _NEIGHBORS_4 + ((1, 1), (1, -1), (-1, 1), (-1, -1))


# ============================================================================
# Data classes
# ============================================================================


@dataclass(frozen=True)
class PixelImage:
    """An already decoded RGBA raster, row-major, 4 bytes per pixel."""

    width: int
    height: int
    rgba: bytes = field(repr=False)

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise ValueError(f"Invalid image size {self.width}x{self.height}")
        expected = self.width * self.height * 4
        if len(self.rgba) != expected:
            raise ValueError(
                f"RGBA buffer has {len(self.rgba)} bytes, expected {expected} "
                f"for {self.width}x{self.height}"
            )
        if not isinstance(self.rgba, bytes):
            object.__setattr__(self, "rgba", bytes(self.rgba))

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @classmethod
    def filled(cls, width: int, height: int, color: Sequence[int]) -> PixelImage:
        """An image of one solid RGBA *color*."""
        return cls(width, height, bytes(color[:4]) * (width * height))

    def pixel(self, x: int, y: int) -> Tuple[int, int, int, int]:
        pos = (y * self.width + x) * 4
        r, g, b, a = self.rgba[pos:pos + 4]
        return r, g, b, a


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class Hotspot:
    """A spatially contiguous cluster of differing pixels."""

    bounding_box: BoundingBox
    pixel_count: int
    severity_tier: Severity
    mean_delta: float  # normalized 0.0 – 1.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "bounding_box": self.bounding_box.to_dict(),
            "pixel_count": self.pixel_count,
            "severity_tier": self.severity_tier.value,
            "mean_delta": self.mean_delta,
        }


@dataclass(frozen=True)
class DiffResult:
    """Outcome of comparing two images."""

    width: int
    height: int
    mask: bytes = field(repr=False)  # 1 byte per pixel, 1 = different
    diff_pixel_count: int
    match_percentage: float
    hotspots: Tuple[Hotspot, ...]

    @property
    def total_pixel_count(self) -> int:
        return self.width * self.height

    @property
    def diff_fraction(self) -> float:
        total = self.total_pixel_count
        return self.diff_pixel_count / total if total else 0.0

    def is_different(self, x: int, y: int) -> bool:
        return self.mask[y * self.width + x] == 1

    def overlay(self, baseline: PixelImage, alpha: float = 0.1) -> PixelImage:
        """Render diff pixels in red over a faded grayscale *baseline*."""
        if (baseline.width, baseline.height) != (self.width, self.height):
            raise DimensionMismatchError(
                (baseline.width, baseline.height), (self.width, self.height),
            )
        out = bytearray(len(baseline.rgba))
        src = baseline.rgba
        for i in range(self.width * self.height):
            pos = i * 4
            if self.mask[i]:
                out[pos:pos + 4] = b"\xff\x00\x00\xff"
                continue
            gray = _rgb2y(src[pos], src[pos + 1], src[pos + 2])
            value = int(255 + (gray - 255) * alpha * src[pos + 3] / 255)
            out[pos:pos + 4] = bytes((value, value, value, 255))
        return PixelImage(self.width, self.height, bytes(out))

    def to_dict(self) -> Dict[str, object]:
        return {
            "width": self.width,
            "height": self.height,
            "diff_pixel_count": self.diff_pixel_count,
            "match_percentage": self.match_percentage,
            "hotspots": [h.to_dict() for h in self.hotspots],
        }


# ============================================================================
# Color math
# ============================================================================


def _rgb2y(r: float, g: float, b: float) -> float:
    return r * 0.29889531 + g * 0.58662247 + b * 0.11448223


def _rgb2i(r: float, g: float, b: float) -> float:
    return r * 0.59597799 - g * 0.27417610 - b * 0.32180189


def _rgb2q(r: float, g: float, b: float) -> float:
    return r * 0.21147017 - g * 0.52261711 + b * 0.31114694


def _blend(c: float, a: float) -> float:
    """Blend a channel with white by alpha ``a`` in [0, 1]."""
    return 255 + (c - 255) * a


def color_delta(
    img1: bytes, img2: bytes, k: int, m: int, y_only: bool = False,
) -> float:
    """Signed perceptual distance between pixel offsets *k* and *m*.

    Positive when the second pixel is darker.  With *y_only* only the
    brightness difference is returned.
    """
    r1, g1, b1, a1 = img1[k], img1[k + 1], img1[k + 2], img1[k + 3]
    r2, g2, b2, a2 = img2[m], img2[m + 1], img2[m + 2], img2[m + 3]
    if a1 == a2 and r1 == r2 and g1 == g2 and b1 == b2:
        return 0.0

    if a1 < 255:
        f = a1 / 255.0
        r1, g1, b1 = _blend(r1, f), _blend(g1, f), _blend(b1, f)
    if a2 < 255:
        f = a2 / 255.0
        r2, g2, b2 = _blend(r2, f), _blend(g2, f), _blend(b2, f)

    y1 = _rgb2y(r1, g1, b1)
    y2 = _rgb2y(r2, g2, b2)
    y = y1 - y2
    if y_only:
        return y

    i = _rgb2i(r1, g1, b1) - _rgb2i(r2, g2, b2)
    q = _rgb2q(r1, g1, b1) - _rgb2q(r2, g2, b2)
    delta = 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q
    return -delta if y1 > y2 else delta


# ============================================================================
# Image Diff Engine
# ============================================================================


class ImageDiffEngine:
    """Compare screenshots and cluster their differences into hotspots.

    Usage::

        engine = ImageDiffEngine()
        result = engine.compare(baseline, candidate)
        for spot in result.hotspots:
            print(spot.bounding_box, spot.severity_tier)
    """

    def __init__(self, options: Optional[DiffOptions] = None) -> None:
        self._options = options or DiffOptions()

    def compare(
        self,
        baseline: PixelImage,
        candidate: PixelImage,
        options: Optional[DiffOptions] = None,
    ) -> DiffResult:
        """Diff *candidate* against *baseline*.

        Raises
        ------
        DimensionMismatchError
            If the two images do not have identical width and height.
        """
        opts = options or self._options
        if (baseline.width, baseline.height) != (candidate.width, candidate.height):
            raise DimensionMismatchError(
                (baseline.width, baseline.height),
                (candidate.width, candidate.height),
            )

        width, height = baseline.width, baseline.height
        total = width * height
        if total == 0:
            return DiffResult(width, height, b"", 0, 100.0, ())

        mask, deltas, diff_count = self._build_mask(baseline, candidate, opts)
        hotspots = self._extract_hotspots(mask, deltas, width, height, opts)
        match = 100.0 - (diff_count / total * 100.0)

        logger.debug(
            "Compared %dx%d images: %d differing pixel(s), %d hotspot(s).",
            width, height, diff_count, len(hotspots),
        )
        return DiffResult(
            width=width,
            height=height,
            mask=bytes(mask),
            diff_pixel_count=diff_count,
            match_percentage=round(match, 4),
            hotspots=tuple(hotspots),
        )

    # ------------------------------------------------------------------
    # Pixel pass
    # ------------------------------------------------------------------

    def _build_mask(
        self,
        baseline: PixelImage,
        candidate: PixelImage,
        opts: DiffOptions,
    ) -> Tuple[bytearray, Dict[int, float], int]:
        width, height = baseline.width, baseline.height
        img1, img2 = baseline.rgba, candidate.rgba
        max_delta = _MAX_YIQ_DELTA * opts.threshold * opts.threshold

        mask = bytearray(width * height)
        deltas: Dict[int, float] = {}
        diff_count = 0

        if img1 == img2:
            return mask, deltas, 0

        for y in range(height):
            row = y * width
            for x in range(width):
                pos = (row + x) * 4
                delta = color_delta(img1, img2, pos, pos)
                if abs(delta) <= max_delta:
                    continue
                if not opts.include_anti_aliasing and (
                    _antialiased(img1, x, y, width, height, img2)
                    or _antialiased(img2, x, y, width, height, img1)
                ):
                    continue
                mask[row + x] = 1
                deltas[row + x] = abs(delta) / _MAX_YIQ_DELTA
                diff_count += 1

        return mask, deltas, diff_count

    # ------------------------------------------------------------------
    # Connected components
    # ------------------------------------------------------------------

    def _extract_hotspots(
        self,
        mask: bytearray,
        deltas: Dict[int, float],
        width: int,
        height: int,
        opts: DiffOptions,
    ) -> List[Hotspot]:
        neighbors = _NEIGHBORS_8 if opts.connectivity == 8 else _NEIGHBORS_4
        seen = bytearray(width * height)
        hotspots: List[Hotspot] = []

        # Labels are discovered in row-major order, which fixes the output
        # order for identical inputs.
        for start in sorted(deltas):
            if seen[start]:
                continue
            seen[start] = 1
            stack = [start]
            count = 0
            delta_sum = 0.0
            min_x, min_y = width, height
            max_x = max_y = -1

            while stack:
                p = stack.pop()
                px, py = p % width, p // width
                count += 1
                delta_sum += deltas[p]
                if px < min_x:
                    min_x = px
                if px > max_x:
                    max_x = px
                if py < min_y:
                    min_y = py
                if py > max_y:
                    max_y = py
                for dx, dy in neighbors:
                    nx, ny = px + dx, py + dy
                    if 0 <= nx < width and 0 <= ny < height:
                        q = ny * width + nx
                        if mask[q] and not seen[q]:
                            seen[q] = 1
                            stack.append(q)

            if count < opts.min_pixel_count:
                continue

            mean_delta = delta_sum / count
            hotspots.append(
                Hotspot(
                    bounding_box=BoundingBox(
                        x=min_x, y=min_y,
                        width=max_x - min_x + 1,
                        height=max_y - min_y + 1,
                    ),
                    pixel_count=count,
                    severity_tier=self._tier(count, mean_delta, opts),
                    mean_delta=round(mean_delta, 4),
                )
            )

        hotspots.sort(
            key=lambda h: (-h.severity_tier.rank, -h.pixel_count, h.bounding_box.y, h.bounding_box.x)
        )
        return hotspots

    @staticmethod
    def _tier(area: int, mean_delta: float, opts: DiffOptions) -> Severity:
        if area < opts.minor_max_area:
            tier = Severity.minor
        elif area <= opts.moderate_max_area:
            tier = Severity.moderate
        else:
            tier = Severity.major
        if opts.contrast_escalation is not None and mean_delta >= opts.contrast_escalation:
            tier = tier.escalate()
        return tier


# ============================================================================
# Anti-aliasing detection
# ============================================================================


def _antialiased(
    img: bytes, x1: int, y1: int, width: int, height: int, img2: bytes,
) -> bool:
    """Whether the pixel at (x1, y1) looks like an anti-aliased edge.

    An anti-aliased pixel sits between a darkest and a brightest neighbour
    that both belong to flat regions (at least three identical siblings)
    in both images.
    """
    x0 = max(x1 - 1, 0)
    y0 = max(y1 - 1, 0)
    x2 = min(x1 + 1, width - 1)
    y2 = min(y1 + 1, height - 1)
    pos = (y1 * width + x1) * 4
    zeroes = 1 if x1 == x0 or x1 == x2 or y1 == y0 or y1 == y2 else 0
    min_delta = max_delta = 0.0
    min_x = min_y = max_x = max_y = 0

    for x in range(x0, x2 + 1):
        for y in range(y0, y2 + 1):
            if x == x1 and y == y1:
                continue
            delta = color_delta(img, img, pos, (y * width + x) * 4, y_only=True)
            if delta == 0:
                zeroes += 1
                if zeroes > 2:
                    return False
            elif delta < min_delta:
                min_delta, min_x, min_y = delta, x, y
            elif delta > max_delta:
                max_delta, max_x, max_y = delta, x, y

    if min_delta == 0 or max_delta == 0:
        return False

    return (
        _has_many_siblings(img, min_x, min_y, width, height)
        and _has_many_siblings(img2, min_x, min_y, width, height)
    ) or (
        _has_many_siblings(img, max_x, max_y, width, height)
        and _has_many_siblings(img2, max_x, max_y, width, height)
    )


def _has_many_siblings(img: bytes, x1: int, y1: int, width: int, height: int) -> bool:
    x0 = max(x1 - 1, 0)
    y0 = max(y1 - 1, 0)
    x2 = min(x1 + 1, width - 1)
    y2 = min(y1 + 1, height - 1)
    pos = (y1 * width + x1) * 4
    zeroes = 1 if x1 == x0 or x1 == x2 or y1 == y0 or y1 == y2 else 0
    pixel = img[pos:pos + 4]

    for x in range(x0, x2 + 1):
        for y in range(y0, y2 + 1):
            if x == x1 and y == y1:
                continue
            other = (y * width + x) * 4
            if img[other:other + 4] == pixel:
                zeroes += 1
            if zeroes > 2:
                return True
    return False
