"""Input/output for fixel directories, matrices and tabular results."""

from fixelcfe.io.fixel import (
    FixelIndex,
    load_fixel_index,
    load_directions,
    check_data_file,
    load_fixel_data,
    load_fixel_mask,
    save_fixel_data,
    copy_index_and_directions,
)
from fixelcfe.io.readers import (
    load_numeric_matrix,
    load_subject_list,
    find_subject_file,
)
from fixelcfe.io.writers import write_fixel_output, save_vector, save_tsv, save_json

__all__ = [
    # Fixel directories
    "FixelIndex",
    "load_fixel_index",
    "load_directions",
    "check_data_file",
    "load_fixel_data",
    "load_fixel_mask",
    "save_fixel_data",
    "copy_index_and_directions",
    # Readers
    "load_numeric_matrix",
    "load_subject_list",
    "find_subject_file",
    # Writers
    "write_fixel_output",
    "save_vector",
    "save_tsv",
    "save_json",
]
