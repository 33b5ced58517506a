"""Shared fixtures: a small strain x lane experiment on disk."""

import numpy as np
import pandas as pd
import pytest

# (sample, strain, lane); strain and lane are partly confounded
DESIGN = [
    ("SRR01", "B6", "L1"),
    ("SRR02", "B6", "L1"),
    ("SRR03", "B6", "L1"),
    ("SRR04", "B6", "L2"),
    ("SRR05", "DBA", "L1"),
    ("SRR06", "DBA", "L2"),
    ("SRR07", "DBA", "L2"),
    ("SRR08", "DBA", "L2"),
]

TARGET_MAPPING = pd.DataFrame({
    "target_id": ["ENST01", "ENST02", "ENST03", "ENST04", "ENST05",
                  "ENST06", "ENST07", "ENST08", "ENST10"],
    "ens_gene": ["G_STRAIN", "G_STRAIN", "G_LANE", "G_H1", "G_H2",
                 "G_H3", "G_H4", "G_H5", "G_LOW"],
    "ext_gene": ["Strn", "Strn", "Lne", "H1", "H2", "H3", "H4", "H5", "Low"],
})


def _expected_counts(strain, lane):
    """Noise-free counts per (versioned) transcript for one sample."""
    counts = {
        "ENST01.1": 100.0 * (3.0 if strain == "DBA" else 1.0),
        "ENST02.1": 100.0 * (3.0 if strain == "DBA" else 1.0),
        "ENST03.2": 200.0 * (3.0 if lane == "L2" else 1.0),
        "ENST09.1": 50.0,  # not in the annotation
        "ENST10.1": 0.0,   # filtered out
    }
    for i in range(4, 9):
        counts[f"ENST0{i}.1"] = 500.0
    return counts


def write_abundance(directory, counts):
    directory.mkdir(parents=True, exist_ok=True)
    df = pd.DataFrame({
        "target_id": list(counts),
        "length": 1500,
        "eff_length": 1350.0,
        "est_counts": list(counts.values()),
    })
    df["tpm"] = df["est_counts"] / df["est_counts"].sum() * 1e6
    df.to_csv(directory / "abundance.tsv", sep="\t", index=False)


@pytest.fixture
def experiment(tmp_path):
    """Metadata CSV plus kallisto output for eight samples.

    Returns a dict with ``metadata``, ``results_root`` and ``mapping``.
    """
    rng = np.random.RandomState(1)
    results_root = tmp_path / "results"
    lines = ["run_accession,library_name"]
    for sample, strain, lane in DESIGN:
        lines.append(f"{sample},{strain}_exp1_{lane}")
        counts = {
            t: c * float(np.exp(rng.normal(0, 0.05)))
            for t, c in _expected_counts(strain, lane).items()
        }
        write_abundance(results_root / sample / "kallisto", counts)

    metadata = tmp_path / "experiment.csv"
    metadata.write_text("\n".join(lines) + "\n")
    return {
        "metadata": metadata,
        "results_root": results_root,
        "mapping": TARGET_MAPPING.copy(),
    }
