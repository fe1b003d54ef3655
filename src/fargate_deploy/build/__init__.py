from .artifacts import read_manifest, render_buildspec, write_manifest, write_tag_file
from .image import BuildEnvironment, ImagePublisher

__all__ = [
    'read_manifest',
    'render_buildspec',
    'write_manifest',
    'write_tag_file',
    'BuildEnvironment',
    'ImagePublisher',
]
