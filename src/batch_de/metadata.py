"""Sample metadata loader.

Reads the experiment's sample sheet and derives the strain, experiment
and lane covariates from each library name, e.g. ``B6_exp1_L1``.
"""

import logging
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union

import pandas as pd

from .config import DEFAULT_QUANT_SUBDIR, DEFAULT_RESULTS_ROOT
from .errors import MalformedInputError
from .model import SampleRecord

logger = logging.getLogger(__name__)

LIBRARY_FIELDS = ("strain", "experiment", "lane")


def parse_library_name(value: str, delimiter: str = "_") -> Tuple[str, str, str]:
    """Split a library name into (strain, experiment, lane).

    Raises:
        MalformedInputError: if the name does not have exactly three tokens.
    """
    tokens = value.split(delimiter)
    if len(tokens) != len(LIBRARY_FIELDS):
        raise MalformedInputError(
            f"library name {value!r} has {len(tokens)} '{delimiter}'-separated "
            f"token(s), expected {len(LIBRARY_FIELDS)}",
            value=value,
        )
    strain, experiment, lane = tokens
    return strain, experiment, lane


def sample_path(
    results_root: Union[str, Path], sample_id: str, subdir: str = DEFAULT_QUANT_SUBDIR
) -> str:
    """Location of a sample's quantification output."""
    return str(Path(results_root) / sample_id / subdir)


def load_metadata(
    path: Union[str, Path],
    results_root: Union[str, Path] = DEFAULT_RESULTS_ROOT,
    subdir: str = DEFAULT_QUANT_SUBDIR,
    sample_column: str = "sample_id",
    library_column: str = "library_name",
    delimiter: str = "_",
) -> List[SampleRecord]:
    """Load a CSV sample sheet into sample records.

    Args:
        path: CSV file with a header row
        results_root: Directory holding one output folder per sample
        subdir: Folder inside each sample directory with the quantification
        sample_column: Column holding the sample identifier
        library_column: Column holding the ``strain_experiment_lane`` name
        delimiter: Library name separator

    Returns:
        One record per row, in file order. Columns other than the sample
        and library columns are kept in ``extra``.

    Raises:
        MalformedInputError: on a missing required column or a library
            name that does not split into three tokens.
    """
    df = pd.read_csv(path, dtype=str, keep_default_na=False)

    missing = [c for c in (sample_column, library_column) if c not in df.columns]
    if missing:
        raise MalformedInputError(
            f"{path}: missing required column(s): {', '.join(missing)}"
        )

    extra_columns = [c for c in df.columns if c not in (sample_column, library_column)]

    samples: List[SampleRecord] = []
    # Header is line 1, so the first data row is line 2
    for line_no, row in enumerate(df.to_dict(orient="records"), start=2):
        sample_id = row[sample_column].strip()
        library_name = row[library_column].strip()
        if not sample_id:
            raise MalformedInputError("empty sample identifier", row=line_no)
        try:
            strain, experiment, lane = parse_library_name(library_name, delimiter)
        except MalformedInputError as exc:
            raise MalformedInputError(str(exc), row=line_no, value=library_name) from exc

        extra: Dict[str, str] = {c: row[c] for c in extra_columns}
        samples.append(SampleRecord(
            sample_id=sample_id,
            library_name=library_name,
            strain=strain,
            experiment=experiment,
            lane=lane,
            path=sample_path(results_root, sample_id, subdir),
            extra=extra,
        ))

    logger.info("Loaded %d samples from %s", len(samples), path)
    return samples


def samples_to_frame(samples: Sequence[SampleRecord]) -> pd.DataFrame:
    """Sample table indexed by sample id, one column per covariate."""
    rows = []
    for s in samples:
        row = {
            "sample": s.sample_id,
            "library_name": s.library_name,
            "strain": s.strain,
            "experiment": s.experiment,
            "lane": s.lane,
            "path": s.path,
        }
        for key, value in s.extra.items():
            row.setdefault(key, value)
        rows.append(row)

    if not rows:
        df = pd.DataFrame(columns=["sample", "library_name", *LIBRARY_FIELDS, "path"])
    else:
        df = pd.DataFrame(rows)
    return df.set_index("sample", drop=False).rename_axis(None)
