"""Fixel-fixel connectivity: index remapping, sparse matrices, codec, builder and filters."""

from fixelcfe.fixel.index_remapper import IndexRemapper
from fixelcfe.fixel.matrix import (
    InitElement,
    NormElement,
    InitFixel,
    NormFixel,
    InitMatrix,
    NormMatrix,
    normalise_matrix,
    to_sparse,
)
from fixelcfe.fixel.codec import save_matrix, load_matrix, parse_line
from fixelcfe.fixel.tracks import VoxelHits, TrackMapper, iter_streamlines
from fixelcfe.fixel.builder import FixelAssigner, generate_matrix
from fixelcfe.fixel.filters import Smooth, Connect

__all__ = [
    # Index remapping
    "IndexRemapper",
    # Sparse matrix
    "InitElement",
    "NormElement",
    "InitFixel",
    "NormFixel",
    "InitMatrix",
    "NormMatrix",
    "normalise_matrix",
    "to_sparse",
    # Codec
    "save_matrix",
    "load_matrix",
    "parse_line",
    # Matrix construction
    "VoxelHits",
    "TrackMapper",
    "iter_streamlines",
    "FixelAssigner",
    "generate_matrix",
    # Filters
    "Smooth",
    "Connect",
]
