"""anyxl.assets - Discovery of charts, images and VBA modules in a workbook."""

from anyxl.assets._package import OoxmlPackage, resolve_target
from anyxl.assets._resolver import AssetResolver, media_type, scan_vba_modules
from anyxl.assets._types import ChartAsset, ImageAsset, MacroModule

__all__ = [
    "AssetResolver",
    "ChartAsset",
    "ImageAsset",
    "MacroModule",
    "OoxmlPackage",
    "media_type",
    "resolve_target",
    "scan_vba_modules",
]
