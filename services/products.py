"""Product catalog management: CRUD, pricing tiers, CSV import/export."""

from __future__ import annotations

import csv
import io
import logging
from decimal import Decimal
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import VALID_PRICING_MODES, VALID_PRODUCT_STATUSES, Bundle, Product, ProductPricingTier
from services.audit import log_action
from services.errors import ConflictError, NotFoundError, ValidationError
from services.listing import Pagination, apply_sort, parse_sort
from services.money import money_float, to_money
from utils import clean_text, isoformat, optional_float, parse_uuid, strict_int, utc_now

logger = logging.getLogger(__name__)

CATEGORY_ALIASES = {
    "chair": "Chairs",
    "chairs": "Chairs",
    "desk": "Desks",
    "desks": "Desks",
    "storage": "Storage",
    "meeting": "Meeting",
    "meetings": "Meeting",
    "accessory": "Accessories",
    "accessories": "Accessories",
}
CATEGORY_CODES = {
    "Chairs": "CHAIR",
    "Desks": "DESK",
    "Storage": "STORAGE",
    "Meeting": "MEETING",
    "Accessories": "ACCESSORY",
}
PRODUCT_SORT_COLUMNS = ("name", "monthly_price", "stock_quantity", "created_at")

CREATE_CODE_ATTEMPTS = 5
IMPORT_CODE_ATTEMPTS = 3

IMPORT_REQUIRED_HEADERS = ("name", "category", "monthly_price", "stock_quantity")
EXPORT_HEADERS = (
    "product_code",
    "name",
    "description",
    "category",
    "monthly_price",
    "stock_quantity",
    "status",
    "created_at",
    "updated_at",
)


class CsvValidationError(ValidationError):
    """CSV rows failed validation; row messages travel in ``meta.errors``."""

    def __init__(self, errors: list[str]):
        super().__init__("CSV validation failed", meta={"errors": errors})


# ---------------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------------

def normalize_category(raw) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    return CATEGORY_ALIASES.get(raw.strip().lower())


def category_code(category: Optional[str]) -> Optional[str]:
    return CATEGORY_CODES.get(category) if category else None


def normalize_product_status(raw) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    return value if value in VALID_PRODUCT_STATUSES else None


def is_valid_http_url(raw: Optional[str]) -> bool:
    """Empty values are allowed; anything else must be an absolute http(s) URL."""
    if not raw:
        return True
    parsed = urlparse(raw)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _positive_price(raw) -> Optional[Decimal]:
    value = optional_float(raw)
    if value is None or value <= 0:
        return None
    return to_money(value)


def _stock(raw) -> Optional[int]:
    value = strict_int(raw)
    if value is None or value < 0:
        return None
    return value


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

def _parse_tier(raw) -> Optional[tuple[int, Decimal]]:
    if not isinstance(raw, dict):
        return None
    min_months = strict_int(raw.get("min_months"))
    price = optional_float(raw.get("monthly_price"))
    if min_months is None or min_months < 2:
        return None
    if price is None or price <= 0:
        return None
    return min_months, to_money(price)


def resolve_pricing(monthly_price, pricing_mode, pricing_tiers) -> tuple[Decimal, str, list]:
    """Validate price, mode and tiers together.

    Returns ``(monthly_price, pricing_mode, [(min_months, price), ...])`` with
    tiers sorted by ``min_months``; fixed pricing always has no tiers.
    """
    price = _positive_price(monthly_price)
    if price is None:
        raise ValidationError("monthly_price must be a positive number")

    mode_raw = str(pricing_mode).strip().lower() if pricing_mode is not None else ""
    mode = mode_raw or "fixed"
    if mode not in VALID_PRICING_MODES:
        raise ValidationError("pricing_mode must be either fixed or tiered")
    if mode == "fixed":
        return price, mode, []

    tiers = None
    if isinstance(pricing_tiers, list):
        parsed = [_parse_tier(item) for item in pricing_tiers]
        if all(tier is not None for tier in parsed):
            tiers = sorted(parsed)
    if not tiers:
        raise ValidationError(
            "pricing_tiers must include at least one valid tier when pricing_mode is tiered"
        )

    seen = set()
    for min_months, tier_price in tiers:
        if min_months in seen:
            raise ValidationError("pricing_tiers cannot contain duplicate min_months values")
        seen.add(min_months)
        if tier_price > price:
            raise ValidationError(
                "pricing_tiers monthly_price must be less than or equal to monthly_price"
            )
    return price, mode, tiers


def _replace_tiers(product: Product, tiers: list) -> None:
    product.pricing_tiers.clear()
    db.session.flush()
    for min_months, price in tiers:
        product.pricing_tiers.append(ProductPricingTier(min_months=min_months, monthly_price=price))


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------

def product_to_dict(product: Product) -> dict:
    return {
        "id": product.id,
        "product_code": product.product_code,
        "name": product.name,
        "description": product.description,
        "category": product.category,
        "monthly_price": money_float(product.monthly_price),
        "pricing_mode": product.pricing_mode,
        "pricing_tiers": [
            {"min_months": tier.min_months, "monthly_price": money_float(tier.monthly_price)}
            for tier in sorted(product.pricing_tiers, key=lambda t: t.min_months)
        ],
        "image_url": product.image_url,
        "video_url": product.video_url,
        "stock_quantity": product.stock_quantity,
        "status": product.status,
        "is_active": bool(product.is_active),
        "published_at": isoformat(product.published_at),
        "created_at": isoformat(product.created_at),
        "updated_at": isoformat(product.updated_at),
    }


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def filtered_products_query(args):
    sort_by, sort_dir = parse_sort(args, PRODUCT_SORT_COLUMNS, "created_at")
    query = Product.query

    search = (args.get("search") or "").strip()
    if search:
        query = query.filter(Product.name.ilike(f"%{search}%"))
    category = normalize_category(args.get("category"))
    if category:
        query = query.filter(Product.category == category)
    status = normalize_product_status(args.get("status"))
    if status:
        query = query.filter(Product.status == status)

    min_price = optional_float(args.get("min_price"))
    if min_price is not None:
        query = query.filter(Product.monthly_price >= min_price)
    max_price = optional_float(args.get("max_price"))
    if max_price is not None:
        query = query.filter(Product.monthly_price <= max_price)
    min_stock = optional_float(args.get("min_stock"))
    if min_stock is not None:
        query = query.filter(Product.stock_quantity >= int(min_stock // 1))
    max_stock = optional_float(args.get("max_stock"))
    if max_stock is not None:
        query = query.filter(Product.stock_quantity <= int(max_stock // 1))

    return apply_sort(query, getattr(Product, sort_by), sort_dir)


def list_products(args) -> tuple[list[dict], dict]:
    pagination = Pagination.from_args(args)
    query = filtered_products_query(args)
    total = query.count()
    products = query.offset(pagination.offset).limit(pagination.limit).all()
    return [product_to_dict(product) for product in products], pagination.meta(total)


def get_product_or_404(raw_id) -> Product:
    product_id = parse_uuid(raw_id)
    if not product_id:
        raise ValidationError("Invalid product ID format")
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


# ---------------------------------------------------------------------------
# Product codes
# ---------------------------------------------------------------------------

def _code_number(product_code: str, code: str) -> int:
    prefix, _, suffix = (product_code or "").partition("-")
    if prefix != code:
        return 0
    try:
        return int(suffix)
    except ValueError:
        return 0


def current_max_code(code: str) -> int:
    rows = (
        db.session.query(Product.product_code)
        .filter(Product.product_code.like(f"{code}-%"))
        .all()
    )
    return max((_code_number(row[0], code) for row in rows), default=0)


def format_product_code(code: str, number: int) -> str:
    return f"{code}-{number:06d}"


def next_product_code(category: str) -> str:
    code = category_code(category)
    return format_product_code(code, current_max_code(code) + 1)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def create_product(payload: dict) -> Product:
    name = clean_text(payload.get("name"))
    description = clean_text(payload.get("description"))
    category = normalize_category(payload.get("category"))
    status = normalize_product_status(payload.get("status")) or "draft"
    image_url = clean_text(payload.get("image_url"))
    video_url = clean_text(payload.get("video_url"))
    raw_stock = payload.get("stock_quantity")
    stock = _stock(0 if raw_stock is None else raw_stock)

    if not name:
        raise ValidationError("name is required")
    if not category:
        raise ValidationError("category is invalid")
    if _positive_price(payload.get("monthly_price")) is None:
        raise ValidationError("monthly_price must be a positive number")
    if stock is None:
        raise ValidationError("stock_quantity must be an integer greater than or equal to 0")
    if not is_valid_http_url(image_url) or not is_valid_http_url(video_url):
        raise ValidationError("image_url and video_url must be valid HTTP(S) URLs")
    price, mode, tiers = resolve_pricing(
        payload.get("monthly_price"), payload.get("pricing_mode"), payload.get("pricing_tiers")
    )

    for attempt in range(CREATE_CODE_ATTEMPTS):
        now = utc_now()
        product = Product(
            product_code=next_product_code(category),
            name=name,
            description=description,
            category=category,
            monthly_price=price,
            pricing_mode=mode,
            image_url=image_url,
            video_url=video_url,
            stock_quantity=stock,
            status=status,
            is_active=status == "active",
            published_at=now if status == "active" else None,
        )
        for min_months, tier_price in tiers:
            product.pricing_tiers.append(
                ProductPricingTier(min_months=min_months, monthly_price=tier_price)
            )
        db.session.add(product)
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            logger.warning(
                "Product code collision for %s (attempt %d)", product.product_code, attempt + 1
            )
            continue
        log_action("create", "product", product.id, f"{product.product_code}: {name}")
        db.session.commit()
        logger.info("Created product %s", product.product_code)
        return product

    raise ConflictError("Failed to generate a unique product code. Please retry.")


def update_product(raw_id, payload: dict) -> Product:
    product_id = parse_uuid(raw_id)
    if not product_id:
        raise ValidationError("Invalid product ID format")
    if payload.get("product_code") is not None:
        raise ValidationError("product_code is immutable")
    product = get_product_or_404(product_id)

    updates = {}
    tiers = None

    if "name" in payload:
        name = clean_text(payload.get("name"))
        if not name:
            raise ValidationError("name cannot be empty")
        updates["name"] = name
    if "description" in payload:
        updates["description"] = clean_text(payload.get("description"))
    if "category" in payload:
        category = normalize_category(payload.get("category"))
        if not category:
            raise ValidationError("category is invalid")
        updates["category"] = category

    if any(key in payload for key in ("monthly_price", "pricing_mode", "pricing_tiers")):
        existing_tiers = [
            {"min_months": tier.min_months, "monthly_price": float(tier.monthly_price)}
            for tier in product.pricing_tiers
        ]
        price, mode, tiers = resolve_pricing(
            payload.get("monthly_price", product.monthly_price),
            payload.get("pricing_mode", product.pricing_mode or "fixed"),
            payload.get("pricing_tiers", existing_tiers),
        )
        updates["monthly_price"] = price
        updates["pricing_mode"] = mode

    if "stock_quantity" in payload:
        stock = _stock(payload.get("stock_quantity"))
        if stock is None:
            raise ValidationError("stock_quantity must be an integer greater than or equal to 0")
        updates["stock_quantity"] = stock
    for field in ("image_url", "video_url"):
        if field in payload:
            url = clean_text(payload.get(field))
            if not is_valid_http_url(url):
                raise ValidationError(f"{field} must be a valid HTTP(S) URL")
            updates[field] = url
    if "status" in payload:
        status = normalize_product_status(payload.get("status"))
        if not status:
            raise ValidationError("status is invalid")
        updates["status"] = status
        updates["is_active"] = status == "active"
        if status == "active" and product.published_at is None:
            updates["published_at"] = utc_now()

    if not updates:
        raise ValidationError("No valid fields provided")

    for field, value in updates.items():
        setattr(product, field, value)
    product.updated_at = utc_now()
    if tiers is not None:
        _replace_tiers(product, tiers)
    log_action("edit", "product", product.id, ", ".join(sorted(updates)))
    db.session.commit()
    return product


def deactivate_product(raw_id) -> Product:
    product = get_product_or_404(raw_id)
    product.status = "inactive"
    product.is_active = False
    product.updated_at = utc_now()
    log_action("deactivate", "product", product.id, product.product_code)
    db.session.commit()
    return product


# ---------------------------------------------------------------------------
# CSV export / import
# ---------------------------------------------------------------------------

def export_products_csv(args) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(EXPORT_HEADERS)
    for product in filtered_products_query(args).all():
        writer.writerow([
            product.product_code,
            product.name,
            product.description or "",
            product.category or "",
            f"{to_money(product.monthly_price):.2f}",
            product.stock_quantity,
            product.status,
            isoformat(product.created_at) or "",
            isoformat(product.updated_at) or "",
        ])
    return buffer.getvalue()


def parse_csv(content: str) -> list[list[str]]:
    try:
        return list(csv.reader(io.StringIO(content), strict=True))
    except csv.Error as exc:
        raise ValidationError(f"Invalid CSV: {exc}") from exc


def _column(row: list[str], headers: list[str], name: str) -> str:
    if name not in headers:
        return ""
    index = headers.index(name)
    return row[index].strip() if index < len(row) else ""


def _validate_import_row(row, headers, line_number) -> tuple[Optional[dict], list[str]]:
    errors = []
    name = _column(row, headers, "name")
    category = normalize_category(_column(row, headers, "category"))
    price = _positive_price(_column(row, headers, "monthly_price"))
    stock = _stock(_column(row, headers, "stock_quantity"))
    image_url = _column(row, headers, "image_url")
    video_url = _column(row, headers, "video_url")

    if not name:
        errors.append(f"Row {line_number}: name is required")
    if not category:
        errors.append(f"Row {line_number}: category is invalid")
    if price is None:
        errors.append(f"Row {line_number}: monthly_price must be a positive number")
    if stock is None:
        errors.append(
            f"Row {line_number}: stock_quantity must be an integer greater than or equal to 0"
        )
    if image_url and not is_valid_http_url(image_url):
        errors.append(f"Row {line_number}: image_url must be a valid HTTP(S) URL")
    if video_url and not is_valid_http_url(video_url):
        errors.append(f"Row {line_number}: video_url must be a valid HTTP(S) URL")
    if errors:
        return None, errors
    return {
        "name": name,
        "description": _column(row, headers, "description") or None,
        "category": category,
        "monthly_price": price,
        "stock_quantity": stock,
        "image_url": image_url or None,
        "video_url": video_url or None,
    }, []


def import_products_csv(filename: Optional[str], content: bytes) -> int:
    """Create every row as a draft product, or none of them."""
    if not filename:
        raise ValidationError("CSV file is required")
    if not filename.lower().endswith(".csv"):
        raise ValidationError("Only CSV files are supported")
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("CSV must be UTF-8 encoded") from exc

    rows = [row for row in parse_csv(text) if any(cell.strip() for cell in row)]
    if len(rows) < 2:
        raise ValidationError("CSV must include a header row and at least one data row")

    headers = [header.strip().lower() for header in rows[0]]
    missing = [header for header in IMPORT_REQUIRED_HEADERS if header not in headers]
    if missing:
        raise ValidationError(f"Missing required columns: {', '.join(missing)}")

    errors: list[str] = []
    records: list[dict] = []
    for index, row in enumerate(rows[1:], start=2):
        record, row_errors = _validate_import_row(row, headers, index)
        errors.extend(row_errors)
        if record is not None:
            records.append(record)
    if errors:
        raise CsvValidationError(errors)

    for attempt in range(IMPORT_CODE_ATTEMPTS):
        counters: dict[str, int] = {}
        for record in records:
            code = category_code(record["category"])
            if code not in counters:
                counters[code] = current_max_code(code)
            counters[code] += 1
            db.session.add(
                Product(
                    product_code=format_product_code(code, counters[code]),
                    status="draft",
                    is_active=False,
                    pricing_mode="fixed",
                    **record,
                )
            )
        try:
            db.session.flush()
        except IntegrityError:
            db.session.rollback()
            logger.warning("Product code collision during import (attempt %d)", attempt + 1)
            continue
        log_action("import", "product", None, f"imported {len(records)} products from {filename}")
        db.session.commit()
        logger.info("Imported %d products from %s", len(records), filename)
        return len(records)

    raise ConflictError("Failed to generate unique product codes for import. Please retry.")


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------

def bundle_to_dict(bundle: Bundle) -> dict:
    return {
        "id": bundle.id,
        "name": bundle.name,
        "description": bundle.description,
        "image_url": bundle.image_url,
        "monthly_price": money_float(bundle.monthly_price),
        "is_active": bool(bundle.is_active),
        "created_at": isoformat(bundle.created_at),
    }


def list_bundles(args) -> tuple[list[dict], dict]:
    pagination = Pagination.from_args(args)
    query = Bundle.query
    if not args.get("include_inactive"):
        query = query.filter(Bundle.is_active.is_(True))
    search = (args.get("search") or "").strip()
    if search:
        query = query.filter(Bundle.name.ilike(f"%{search}%"))
    total = query.count()
    bundles = query.order_by(Bundle.name.asc()).offset(pagination.offset).limit(pagination.limit).all()
    return [bundle_to_dict(bundle) for bundle in bundles], pagination.meta(total)


def deactivate_bundle(raw_id) -> Bundle:
    bundle_id = parse_uuid(raw_id)
    if not bundle_id:
        raise ValidationError("Invalid bundle ID format")
    bundle = db.session.get(Bundle, bundle_id)
    if bundle is None:
        raise NotFoundError("Bundle not found")
    bundle.is_active = False
    log_action("deactivate", "bundle", bundle.id, bundle.name)
    db.session.commit()
    return bundle
