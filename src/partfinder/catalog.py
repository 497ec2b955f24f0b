"""
Parts catalog loading and filtering.

Loads `products.json` and filters it by vehicle fitment and part text so the
call flow can read back real catalog entries.

The catalog source is a JSON array where each product looks like:

    {
        "title": "Brake Pad Set",
        "partType": "brake pads",
        "price": 49.99,
        "fits": [{"year": 2018, "make": "Toyota", "model": "Camry"}]
    }
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import lru_cache
import json
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
import unicodedata

import structlog

logger = structlog.get_logger(__name__)


class CatalogError(Exception):
    """Raised when the catalog file is missing or malformed."""
    pass


@dataclass(frozen=True)
class Fitment:
    year: str
    make: str
    model: str


@dataclass(frozen=True)
class CatalogItem:
    title: str
    part_type: str
    price: Decimal
    fits: Tuple[Fitment, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        """Render the wire form used by the local API."""
        return {
            "title": self.title,
            "partType": self.part_type,
            "price": float(self.price),
            "fits": [
                {"year": fit.year, "make": fit.make, "model": fit.model}
                for fit in self.fits
            ],
        }


@dataclass(frozen=True)
class Catalog:
    items: Tuple[CatalogItem, ...]

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)


def _project_root() -> Path:
    # src/partfinder/catalog.py -> src/partfinder -> src -> project root
    return Path(__file__).resolve().parent.parent.parent


def resolve_catalog_path(catalog_path: Optional[str] = None) -> Path:
    """
    Resolve a catalog path.

    If catalog_path is relative, it is interpreted relative to the project root.
    Defaults to `products.json` in the project root.
    """
    if not catalog_path:
        return _project_root() / "products.json"

    path = Path(catalog_path)
    if path.is_absolute():
        return path
    return _project_root() / path


def _normalize(text: Any) -> str:
    """
    Normalize text for matching: casefold + strip accents + collapse whitespace.
    """
    if text is None:
        return ""
    text = unicodedata.normalize("NFKD", str(text))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = " ".join(text.split())
    return text.casefold()


def normalize_year(value: Any) -> str:
    """
    Normalize a model year so "2018", 2018, 2018.0 and " 2018 " compare equal.

    Non-numeric values fall back to normalized text.
    """
    text = _normalize(value)
    if not text:
        return ""
    try:
        number = Decimal(text)
        # Only plausible whole-number years get the numeric form.
        if number.is_finite() and number.adjusted() < 5 and number == number.to_integral_value():
            return str(int(number))
    except (InvalidOperation, ValueError, OverflowError):
        pass
    return text


def _parse_price(value: Any) -> Decimal:
    if isinstance(value, bool) or value is None:
        raise CatalogError(f"Invalid price: {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise CatalogError(f"Invalid price: {value!r}") from e


def _parse_item(raw: Any, index: int) -> CatalogItem:
    if not isinstance(raw, dict):
        raise CatalogError(f"Catalog entry {index} is not an object")

    title = raw.get("title")
    if not title:
        raise CatalogError(f"Catalog entry {index} has no title")

    fits: List[Fitment] = []
    for fit in raw.get("fits") or []:
        if not isinstance(fit, dict):
            raise CatalogError(f"Catalog entry {index} has a malformed fitment record")
        fits.append(
            Fitment(
                year=str(fit.get("year", "") or ""),
                make=str(fit.get("make", "") or ""),
                model=str(fit.get("model", "") or ""),
            )
        )

    return CatalogItem(
        title=str(title),
        part_type=str(raw.get("partType", "") or ""),
        price=_parse_price(raw.get("price")),
        fits=tuple(fits),
    )


def parse_catalog(products: Any) -> Catalog:
    """Build a catalog from already-decoded JSON."""
    if not isinstance(products, list):
        raise CatalogError("Catalog must be a JSON array of products")
    return Catalog(items=tuple(_parse_item(raw, i) for i, raw in enumerate(products)))


def load_catalog(path: Path) -> Catalog:
    """
    Load a catalog file.

    Raises:
        CatalogError: If the file is missing, is not valid JSON, or holds
            malformed products.
    """
    if not path.exists():
        raise CatalogError(f"Catalog file not found: {path}")

    try:
        products = json.loads(path.read_text(encoding="utf-8"), parse_float=Decimal)
    except (OSError, ValueError) as e:
        raise CatalogError(f"Could not read catalog {path}: {e}") from e

    return parse_catalog(products)


@lru_cache(maxsize=1)
def get_catalog(catalog_path: Optional[str] = None) -> Catalog:
    """
    Load and cache the catalog.

    Unlike most lookups here, failures propagate: the server cannot run
    without a catalog.
    """
    path = resolve_catalog_path(catalog_path)
    try:
        catalog = load_catalog(path)
    except CatalogError as e:
        logger.error("Failed to load catalog", catalog_path=str(path), error=str(e))
        raise

    logger.info("Catalog loaded", catalog_path=str(path), num_items=len(catalog))
    return catalog


def _fits_vehicle(fits: Iterable[Fitment], year: str, make: str, model: str) -> bool:
    for fit in fits:
        if year and normalize_year(fit.year) != year:
            continue
        if make and _normalize(fit.make) != make:
            continue
        if model and _normalize(fit.model) != model:
            continue
        return True
    return False


def search_parts(
    catalog: Union[Catalog, Iterable[CatalogItem]],
    year: Any = "",
    make: Any = "",
    model: Any = "",
    item: Any = "",
) -> List[CatalogItem]:
    """
    Filter the catalog by fitment and part text.

    Empty fields are wildcards. An item matches when any one of its fitment
    records agrees on every non-empty vehicle field, and the item text (if
    any) appears in its title or part type. Order follows the catalog.
    """
    q_year = normalize_year(year)
    q_make = _normalize(make)
    q_model = _normalize(model)
    q_item = _normalize(item)

    results: List[CatalogItem] = []
    for product in catalog:
        if not _fits_vehicle(product.fits, q_year, q_make, q_model):
            continue
        if q_item and q_item not in _normalize(product.title) and q_item not in _normalize(product.part_type):
            continue
        results.append(product)
    return results
