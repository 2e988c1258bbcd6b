"""
Stage for losslessly shrinking raster images.
"""
from __future__ import annotations

import io

from .core import FileItem, Stage
from .dependencies import PipDependency


class ImageOptimizerStage(Stage):
    """
    Re-encode images with Pillow's optimizing encoders. JPEGs keep their
    quality tables and become progressive if @progressive is set; GIFs are
    interlaced if @interlaced is set. If re-encoding doesn't make the
    file smaller, the original bytes are kept.
    """
    stage_id = 'imagemin'
    suffixes = ('.png', '.jpg', '.jpeg', '.gif')

    @classmethod
    def get_dependencies(cls):
        return {
            PipDependency('Pillow', check_name='PIL'),
        }

    def __init__(self, progressive: bool = True, interlaced: bool = True):
        self.progressive = progressive
        self.interlaced = interlaced

    def save_params(self, image_format: str, animated: bool) -> dict:
        if image_format == 'JPEG':
            return {'optimize': True, 'progressive': self.progressive, 'quality': 'keep'}
        if image_format == 'PNG':
            return {'optimize': True}
        if image_format == 'GIF':
            return {'optimize': True, 'interlace': self.interlaced, 'save_all': animated}
        return {}

    def transform(self, item: FileItem):
        from PIL import Image

        output = io.BytesIO()
        with Image.open(io.BytesIO(item.contents)) as img:
            image_format = img.format
            if image_format not in ('JPEG', 'PNG', 'GIF'):
                return item
            params = self.save_params(image_format, getattr(img, 'is_animated', False))
            img.save(output, format=image_format, **params)

        optimized = output.getvalue()
        original_size = len(item.contents)
        if len(optimized) >= original_size:
            optimized = item.contents
        meta = dict(item.meta, original_size=original_size, size=len(optimized))
        return item.derive(contents=optimized, meta=meta)
