"""Screenshot comparison."""

from rundiag.visual.image_diff import DiffResult, Hotspot, ImageDiffEngine, PixelImage

__all__ = ["DiffResult", "Hotspot", "ImageDiffEngine", "PixelImage"]
