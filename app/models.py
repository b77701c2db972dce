from dataclasses import dataclass, asdict, field
from typing import Dict, List, Optional

MATCH = 'match'
MISMATCH = 'mismatch'
NOT_AVAILABLE = 'N/A'


@dataclass(frozen=True)
class UploadedFile:
    """An uploaded file (or archive entry) held fully in memory."""

    name: str
    content: bytes
    content_type: str = 'application/octet-stream'

    def text(self, encoding: str = 'utf-8-sig') -> str:
        return self.content.decode(encoding)


@dataclass(frozen=True)
class CellValue:
    """
    A CSV cell resolved once at read time.

    kind is 'json' when the cell holds an embedded JSON object (kept in
    `data`), otherwise 'text' and only `raw` is meaningful.
    """

    kind: str
    raw: str
    data: Optional[dict] = None


@dataclass(frozen=True)
class CsvExtraction:
    identities: List[str]
    created_by: Dict[str, str]


@dataclass(frozen=True)
class ExtractedIdentity:
    filename: str
    identity: str


@dataclass(frozen=True)
class SkippedFile:
    filename: str
    reason: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class JsonExtraction:
    identities: List[ExtractedIdentity]
    skipped: List[SkippedFile]
    category_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def identity_values(self) -> List[str]:
        return [item.identity for item in self.identities]


@dataclass(frozen=True)
class ComparisonRow:
    user: str
    created_by: str
    csv_count: int
    json_count: int
    mismatched: int
    status: str

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class SummaryStatistics:
    total_csv_count: int = 0
    total_json_count: int = 0
    nearmiss_count: int = 0
    hazard_count: int = 0
    harm_injury_count: int = 0
    product_count: int = 0
    sales_delivery_count: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class MissingUserRecord:
    current_user: str
    filename: str

    def to_dict(self) -> Dict:
        return {'current_user': self.current_user, 'filename': self.filename}
