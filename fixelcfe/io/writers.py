"""Output files of the fixelcfe commands: fixel images, text vectors, tables, sidecars."""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np

from fixelcfe.fixel.index_remapper import IndexRemapper
from fixelcfe.io.fixel import save_fixel_data

NIFTI_EXTENSIONS = (".nii.gz", ".nii")


def _timestamped(metadata: Dict[str, Any], **extra) -> Dict[str, Any]:
    return dict(metadata, **extra, CreationTime=datetime.now().isoformat())


def sidecar_path(image_path: Path) -> Path:
    """JSON sidecar of a NIfTI image, e.g. ``fwe_pvalue.nii.gz`` -> ``fwe_pvalue.json``."""
    image_path = Path(image_path)
    for extension in NIFTI_EXTENSIONS:
        if image_path.name.endswith(extension):
            return image_path.with_name(image_path.name[:-len(extension)] + ".json")
    return image_path.with_suffix(".json")


def write_fixel_output(
    output_path: Union[str, Path],
    data: np.ndarray,
    index_remapper: IndexRemapper,
    metadata: Optional[Dict[str, Any]] = None,
) -> Path:
    """Write one value per internal fixel as a template-sized fixel data file.

    Values are mapped back to template indices, so fixels outside the
    processing mask come out as NaN.

    Args:
        output_path: Output ``.nii``/``.nii.gz`` file.
        data: Internally-indexed values.
        index_remapper: Remapper the input data was loaded with.
        metadata: Written to a JSON sidecar (with a creation time) if given.

    Returns:
        The output path.
    """
    output_path = Path(output_path)
    save_fixel_data(output_path, index_remapper.to_external(data))
    if metadata is not None:
        save_json(_timestamped(metadata), sidecar_path(output_path))
    return output_path


def save_vector(values: np.ndarray, output_path: Union[str, Path]) -> Path:
    """Write a vector as text at full precision, one value per line (e.g. a null distribution)."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    lines = [repr(float(value)) for value in np.ravel(values)]
    output_path.write_text("".join(line + "\n" for line in lines))
    return output_path


def save_tsv(dataframe, output_path: Union[str, Path],
             metadata: Optional[Dict[str, Any]] = None) -> Path:
    """Write a pandas DataFrame as a tab-separated table.

    A non-empty ``metadata`` dictionary is completed with the column names
    and row count and written next to the table as ``<name>.json``.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    dataframe.to_csv(output_path, sep="\t", index=False)
    if metadata:
        save_json(
            _timestamped(metadata, Columns=list(dataframe.columns), NumRows=len(dataframe)),
            output_path.with_suffix(".json"),
        )
    return output_path


def save_json(data: Dict[str, Any], output_path: Union[str, Path]) -> Path:
    """Write a dictionary as indented JSON; numpy values and paths are converted."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w") as f:
        json.dump(to_json_compatible(data), f, indent=2)
    return output_path


def to_json_compatible(value: Any) -> Any:
    """Recursively convert paths, numpy scalars and arrays to plain JSON types.

    Non-finite floats become ``None`` (JSON null).
    """
    if isinstance(value, dict):
        return {str(key): to_json_compatible(item) for key, item in value.items()}
    if isinstance(value, np.ndarray):
        return to_json_compatible(value.tolist())
    if isinstance(value, (list, tuple)):
        return [to_json_compatible(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, (float, np.floating)):
        value = float(value)
        return value if np.isfinite(value) else None
    return value
