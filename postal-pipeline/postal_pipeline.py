"""
Postal Code Summary Pipeline

This script downloads the GeoNames US postal-code archive, extracts the
'US.txt' entry in memory and prints the sorted list of states it covers,
followed by the total number of entries.

The extracted lines are memoized in a local JSON cache (optionally mirrored to
Google Cloud Storage) so that subsequent runs skip the download entirely.

Source format (https://download.geonames.org/export/zip/), one tab-separated
record per line, no header:
    country code, postal code, place name, admin name1 (state), admin code1,
    admin name2 (county), admin code2, admin name3, admin code3,
    latitude, longitude, accuracy

The summary reads admin name1 (e.g. "Alaska"), the fourth field. The earlier
Ruby script read the fifth field, admin code1, and printed codes such as "AK".
"""

import io
import json
import logging
import os
import tempfile
import zipfile
import zlib

import pandas as pd
import requests
from dotenv import load_dotenv
from google.cloud import storage


def get_logger(name="postal_pipeline", level=logging.INFO):
    """
    Returns a configured logger writing to stderr.

    Parameters:
        name (str): Name of the logger.
        level (int): Logging level (default: logging.INFO).

    Returns:
        logging.Logger: Configured logger instance.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:  # Avoid adding multiple handlers if called multiple times
        logger.setLevel(level)
        ch = logging.StreamHandler()
        ch.setLevel(level)
        formatter = logging.Formatter("%(levelname)s: %(message)s")
        ch.setFormatter(formatter)
        logger.addHandler(ch)

    return logger


logger = get_logger('Postal Pipeline')

# --- Config ---
load_dotenv()
ZIP_URL = 'https://download.geonames.org/export/zip/US.zip'
ZIP_ENTRY = 'US.txt'
CACHE_KEY = 'get_zip_codes'
CACHE_DIR = os.getenv("POSTAL_CACHE_DIR", "cache")
GCS_BUCKET = os.getenv("POSTAL_CACHE_BUCKET") or None
GCP_PROJECT = os.getenv("POSTAL_GCP_PROJECT") or None
REQUEST_TIMEOUT = float(os.getenv("POSTAL_REQUEST_TIMEOUT", "120"))

GEONAMES_COLUMNS = [
    'country_code', 'postal_code', 'place_name',
    'admin_name1', 'admin_code1',
    'admin_name2', 'admin_code2',
    'admin_name3', 'admin_code3',
    'latitude', 'longitude', 'accuracy',
]
STATE_FIELD_INDEX = 3
STATE_COLUMN = GEONAMES_COLUMNS[STATE_FIELD_INDEX]


# --- Errors ---
class PipelineError(Exception):
    """Base class for every failure that aborts a run."""


class NetworkError(PipelineError):
    pass


class ArchiveError(PipelineError):
    pass


class NotFoundError(PipelineError):
    pass


class CacheError(PipelineError):
    pass


# --- Cache Helper Class ---
class CachingManager:
    def __init__(self, local_cache_dir: str = CACHE_DIR, bucket_name: str | None = None,
                 project_id: str | None = None, gcs_client=None):
        """Initializes the Caching Manager, mirrored to a GCS bucket when one is given."""
        self.bucket = None
        if bucket_name:
            try:
                self.client = storage.Client(project=project_id) if gcs_client is None else gcs_client
                self.bucket = self.client.bucket(bucket_name)
            except Exception as e:
                raise CacheError(
                    f"Failed to initialize GCS client. Ensure you have authenticated correctly. Error: {e}"
                ) from e

        self.local_cache_dir = local_cache_dir
        try:
            os.makedirs(self.local_cache_dir, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Could not create cache directory '{local_cache_dir}'. Error: {e}") from e

        if self.bucket is not None:
            logger.info(f"   -> CachingManager initialized for GCS bucket '{bucket_name}'.")
        else:
            logger.info(f"   -> CachingManager initialized for local directory '{local_cache_dir}'.")

    def get(self, file_name: str):
        """Tries to get an entry from the cache. First checks local, then GCS."""
        local_path = os.path.join(self.local_cache_dir, file_name)
        if os.path.exists(local_path):
            return self._load_from_local(local_path)

        if self.bucket is None:
            return None

        try:
            blob = self.bucket.blob(file_name)
            if not blob.exists():
                return None
            logger.info(f"   -> Cache HIT from GCS for '{file_name}'. Downloading...")
            self._replace_atomically(local_path, blob.download_to_filename)
            return self._load_from_local(local_path)
        except CacheError as e:
            # A corrupt download must not shadow later runs.
            if os.path.exists(local_path):
                os.remove(local_path)
            logger.warning(f"     Discarded unreadable GCS copy of '{file_name}'. Error: {e}")
            return None
        except Exception as e:
            logger.warning(f"     Could not read '{file_name}' from GCS cache. Error: {e}")
            return None

    def set(self, file_name: str, data):
        """Saves data to the local cache and uploads it to GCS."""
        local_path = os.path.join(self.local_cache_dir, file_name)

        def dump(tmp_path):
            with open(tmp_path, 'w', encoding='utf-8') as f:
                json.dump(data, f)

        try:
            self._replace_atomically(local_path, dump)
        except OSError as e:
            raise CacheError(f"Failed to save '{file_name}' to local cache. Error: {e}") from e

        if self.bucket is not None:
            try:
                logger.info(f"   -> Saving '{file_name}' to GCS cache...")
                blob = self.bucket.blob(file_name)
                blob.upload_from_filename(local_path)
            except Exception as e:
                logger.warning(f"     Failed to upload '{file_name}' to GCS cache. Error: {e}")

    def get_or_compute(self, key: str, compute) -> list[str]:
        """
        Returns the lines cached under `key`, calling `compute` only on a miss.
        The result is stored after `compute` succeeds, never before.
        """
        file_name = f"{key}.json"
        cached = self.get(file_name)
        if cached is not None:
            if not isinstance(cached, list) or not all(isinstance(line, str) for line in cached):
                raise CacheError(f"Cache entry '{file_name}' does not hold a list of lines.")
            logger.info(f"   -> Cache HIT for '{key}'. Loading from cache.")
            return cached

        logger.info(f"   -> Cache MISS for '{key}'. Fetching from live source...")
        result = list(compute())
        self.set(file_name, result)
        return result

    def _load_from_local(self, local_path: str):
        """Helper to load a JSON entry from the local cache."""
        try:
            with open(local_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise CacheError(f"Could not load local cache file '{local_path}'. Error: {e}") from e

    @staticmethod
    def _replace_atomically(local_path: str, write):
        # Readers only ever see a complete file at local_path.
        directory = os.path.dirname(local_path) or '.'
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.', suffix='.tmp')
        os.close(fd)
        try:
            write(tmp_path)
            os.replace(tmp_path, local_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise


# --- Processing Functions ---
def get_zip_codes(url: str = ZIP_URL, entry_name: str = ZIP_ENTRY,
                  timeout: float = REQUEST_TIMEOUT) -> list[str]:
    """
    Downloads the postal-code archive and returns the lines of `entry_name`
    in file order, line terminators removed.
    """
    try:
        res = requests.get(url, timeout=timeout)
        res.raise_for_status()
    except requests.RequestException as e:
        raise NetworkError(f"Could not download '{url}'. Error: {e}") from e

    codes = []
    try:
        with zipfile.ZipFile(io.BytesIO(res.content)) as archive:
            entry = next((info for info in archive.infolist() if info.filename == entry_name), None)
            if entry is None:
                raise NotFoundError(f"Archive from '{url}' has no entry named '{entry_name}'.")

            with archive.open(entry) as stream:
                for raw in stream:
                    codes.append(raw.decode('utf-8').removesuffix('\n').removesuffix('\r'))
    except (zipfile.BadZipFile, zlib.error, NotImplementedError, EOFError) as e:
        raise ArchiveError(f"Payload from '{url}' is not a valid ZIP archive. Error: {e}") from e
    except UnicodeDecodeError as e:
        raise ArchiveError(f"Entry '{entry_name}' is not UTF-8 text. Error: {e}") from e

    return codes


def records_to_frame(lines: list[str]) -> pd.DataFrame:
    """
    Splits raw tab-separated lines into a DataFrame with the GeoNames columns.
    Missing trailing fields become NA, surplus fields are dropped.
    """
    if not lines:
        return pd.DataFrame(columns=GEONAMES_COLUMNS, dtype='object')

    df = pd.Series(lines, dtype='object').str.split('\t', expand=True)
    df = df.reindex(columns=range(len(GEONAMES_COLUMNS)))
    df.columns = GEONAMES_COLUMNS
    return df


def summarize_states(lines: list[str]) -> list[str]:
    """Unique state names in ascending order. Lines too short to hold a state are skipped."""
    states = records_to_frame(lines)[STATE_COLUMN]

    malformed = int(states.isna().sum())
    if malformed:
        logger.warning(f"     Skipped {malformed} malformed line(s) with fewer than "
                       f"{STATE_FIELD_INDEX + 1} fields.")

    return sorted(states.dropna().unique())


def render_summary(lines: list[str]) -> tuple[str, str]:
    states = summarize_states(lines)
    return ", ".join(states), f"{len(lines)} entries to be exact"


def main():
    try:
        logger.info("1. Initializing cache manager...")
        cacher = CachingManager(local_cache_dir=CACHE_DIR, bucket_name=GCS_BUCKET, project_id=GCP_PROJECT)

        logger.info(f"2. Loading postal codes for '{CACHE_KEY}'...")
        codes = cacher.get_or_compute(CACHE_KEY, get_zip_codes)
    except PipelineError as e:
        raise SystemExit(f"FATAL: {e}")

    logger.info(f"3. Summarizing {len(codes)} entries...")
    states_line, count_line = render_summary(codes)
    print(states_line)
    print(count_line)


if __name__ == '__main__':
    main()
