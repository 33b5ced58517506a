"""Ensembl BioMart transcript-to-gene annotation with local caching.

Downloads the transcript / gene / gene-name table for one BioMart
dataset and caches it as TSV. The cache is refreshed when it is older
than 30 days; if a refresh fails, a stale cache is used and, without
one, the download error is raised to the caller.
"""

import logging
import re
import time
from io import StringIO
from pathlib import Path
from typing import Optional, Sequence
from xml.sax.saxutils import quoteattr

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import DEFAULT_BIOMART_DATASET, DEFAULT_BIOMART_HOST, DEFAULT_CACHE_DIR

logger = logging.getLogger(__name__)

BIOMART_PATH = "/biomart/martservice"

# BioMart attribute -> column name used throughout the analysis
TARGET_MAPPING_ATTRIBUTES = {
    "ensembl_transcript_id": "target_id",
    "ensembl_gene_id": "ens_gene",
    "external_gene_name": "ext_gene",
}

# Cache expiry: 30 days in seconds
CACHE_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

_VERSION_SUFFIX = re.compile(r"\.\d+$")


def create_session(
    max_retries: int = 3,
    backoff_factor: float = 0.5,
    status_forcelist: tuple = (429, 500, 502, 503, 504),
    user_agent: str = "batch-de/0.1",
) -> requests.Session:
    """Create a requests Session that retries transient BioMart failures."""
    session = requests.Session()
    retries = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=("GET",),
    )
    adapter = HTTPAdapter(max_retries=retries)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": user_agent})
    return session


def build_query_xml(dataset: str, attributes: Sequence[str]) -> str:
    """Build a BioMart XML query returning ``attributes`` as TSV with a header."""
    attrs = "".join(f"<Attribute name={quoteattr(a)}/>" for a in attributes)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        "<!DOCTYPE Query>"
        '<Query virtualSchemaName="default" formatter="TSV" header="1" '
        'uniqueRows="1" datasetConfigVersion="0.6">'
        f"<Dataset name={quoteattr(dataset)} interface=\"default\">{attrs}</Dataset>"
        "</Query>"
    )


def strip_version(transcript_id: str) -> str:
    """``ENSMUST00000000001.4`` -> ``ENSMUST00000000001``."""
    return _VERSION_SUFFIX.sub("", transcript_id)


class BiomartClient:
    """Fetches a transcript-to-gene mapping from Ensembl BioMart.

    Args:
        dataset: BioMart dataset, e.g. ``mmusculus_gene_ensembl``
        host: BioMart host; archive hosts pin an Ensembl release
        cache_dir: Directory for the cached TSV. Defaults to ``~/.batch_de``.
        session: Optional preconfigured requests session
        timeout: Request timeout in seconds
    """

    def __init__(
        self,
        dataset: str = DEFAULT_BIOMART_DATASET,
        host: str = DEFAULT_BIOMART_HOST,
        cache_dir: Optional[Path] = None,
        session: Optional[requests.Session] = None,
        timeout: int = 300,
    ) -> None:
        self.dataset = dataset
        self.host = host
        self.timeout = timeout
        self._cache_dir = Path(cache_dir) if cache_dir is not None else DEFAULT_CACHE_DIR
        self._session = session
        self._mapping: Optional[pd.DataFrame] = None

    @property
    def cache_path(self) -> Path:
        return self._cache_dir / f"biomart_{self.dataset}.tsv"

    @property
    def url(self) -> str:
        host = self.host if "://" in self.host else f"https://{self.host}"
        return host.rstrip("/") + BIOMART_PATH

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def fetch_target_mapping(self) -> pd.DataFrame:
        """Return the ``target_id`` / ``ens_gene`` / ``ext_gene`` table.

        Loads from cache (downloading if needed) on first access.
        """
        if self._mapping is None:
            self._mapping = self._load_or_download()
        return self._mapping

    # -----------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------

    def _load_or_download(self) -> pd.DataFrame:
        if self._cache_is_valid():
            logger.info("Loading BioMart annotation from cache: %s", self.cache_path)
            return self._read_cache()

        logger.info("Downloading %s annotation from %s", self.dataset, self.host)
        try:
            mapping = self._download_and_parse()
        except (requests.RequestException, ValueError) as exc:
            if self.cache_path.exists():
                logger.warning(
                    "BioMart download failed (%s); falling back to stale cache", exc
                )
                return self._read_cache()
            raise

        self._write_cache(mapping)
        logger.info(
            "Cached %d transcript mappings to %s", len(mapping), self.cache_path
        )
        return mapping

    def _cache_is_valid(self) -> bool:
        if not self.cache_path.exists():
            return False
        age = time.time() - self.cache_path.stat().st_mtime
        return age < CACHE_MAX_AGE_SECONDS

    def _download_and_parse(self) -> pd.DataFrame:
        session = self._session or create_session()
        query = build_query_xml(self.dataset, list(TARGET_MAPPING_ATTRIBUTES))
        response = session.get(self.url, params={"query": query}, timeout=self.timeout)
        response.raise_for_status()
        return parse_biomart_tsv(response.text)

    def _read_cache(self) -> pd.DataFrame:
        return pd.read_csv(self.cache_path, sep="\t", dtype=str, keep_default_na=False)

    def _write_cache(self, mapping: pd.DataFrame) -> None:
        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        mapping.to_csv(self.cache_path, sep="\t", index=False)


def parse_biomart_tsv(text: str) -> pd.DataFrame:
    """Parse a BioMart TSV response into the target mapping table.

    BioMart reports query problems as a 200 response whose body starts
    with ``Query ERROR``; that is raised as ``ValueError``.
    """
    if text.lstrip().startswith("Query ERROR"):
        raise ValueError(f"BioMart query failed: {text.strip()[:200]}")

    df = pd.read_csv(StringIO(text), sep="\t", dtype=str, keep_default_na=False)
    if len(df.columns) != len(TARGET_MAPPING_ATTRIBUTES):
        raise ValueError(
            f"Unexpected BioMart response with columns {list(df.columns)}"
        )
    # Header carries display names ("Transcript stable ID"); order is fixed by the query
    df.columns = list(TARGET_MAPPING_ATTRIBUTES.values())
    df = df[df["target_id"] != ""]
    return df.drop_duplicates().reset_index(drop=True)
