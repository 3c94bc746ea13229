from bulk_data.schemas.outcome import OperationOutcome
from bulk_data.schemas.manifest import Manifest, ManifestEntry
from bulk_data.schemas.import_job import ImportInput, ImportKickOffRequest, StorageDetail

__all__ = [
    "OperationOutcome",
    "Manifest",
    "ManifestEntry",
    "ImportInput",
    "ImportKickOffRequest",
    "StorageDetail",
]
