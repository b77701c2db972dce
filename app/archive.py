import io
import logging
import zipfile
import zlib
from typing import Iterable, List

from app.errors import ExtractionError
from app.models import UploadedFile

logger = logging.getLogger(__name__)

ZIP_EXTENSION = '.zip'
JSON_EXTENSION = '.json'
JSON_CONTENT_TYPE = 'application/json'


def extract_zip_entries(archive: UploadedFile) -> List[UploadedFile]:
    """Return every non-directory `.json` entry of a ZIP archive, in archive order."""
    try:
        zf = zipfile.ZipFile(io.BytesIO(archive.content))
    except zipfile.BadZipFile as e:
        raise ExtractionError(
            f'Could not open ZIP archive {archive.name}',
            f'"{archive.name}" is not a valid ZIP archive.\n\nError details: {str(e)}'
        )

    entries = []
    with zf:
        for info in zf.infolist():
            if info.is_dir() or not info.filename.endswith(JSON_EXTENSION):
                continue
            try:
                content = zf.read(info)
            except (zipfile.BadZipFile, RuntimeError, zlib.error) as e:
                # RuntimeError covers encrypted entries
                raise ExtractionError(
                    f'Could not read {info.filename} from ZIP archive {archive.name}',
                    f'"{info.filename}" in "{archive.name}" could not be extracted.\n\nError details: {str(e)}'
                )
            entries.append(UploadedFile(
                name=info.filename,
                content=content,
                content_type=JSON_CONTENT_TYPE
            ))
    return entries


def expand_uploads(uploads: Iterable[UploadedFile]) -> List[UploadedFile]:
    """
    Expand ZIP archives into their JSON entries and pass JSON files through.

    Files are processed one at a time in input order. Anything that is neither
    a ZIP nor a JSON file is dropped. An archive without JSON entries only
    contributes nothing; the call fails when the whole batch yields no JSON.
    """
    json_files = []
    empty_archives = []

    for upload in uploads:
        if upload.name.endswith(ZIP_EXTENSION):
            entries = extract_zip_entries(upload)
            if not entries:
                logger.warning("No JSON files found in ZIP archive %s", upload.name)
                empty_archives.append(upload.name)
            else:
                logger.info("Extracted %d JSON file(s) from %s", len(entries), upload.name)
            json_files.extend(entries)
        elif upload.name.endswith(JSON_EXTENSION):
            json_files.append(upload)
        else:
            logger.debug("Ignoring non-JSON upload %s", upload.name)

    if not json_files:
        if empty_archives:
            raise ExtractionError(
                'No JSON files found in the ZIP archive',
                f'No JSON files found in: {", ".join(empty_archives)}'
            )
        raise ExtractionError('No JSON files found in the selected files/archives')

    return json_files
