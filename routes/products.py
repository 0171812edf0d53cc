"""Product catalog routes: JSON API, CSV import/export, media upload, admin screens."""

import logging

from flask import (
    Blueprint,
    Response,
    current_app,
    flash,
    redirect,
    render_template,
    request,
    url_for,
)

from extensions import db
from models import PRODUCT_CATEGORIES, VALID_PRODUCT_STATUSES
from services.api import handle_api_errors, json_body, success_response
from services.auth import role_required
from services.errors import DesklyError
from services.listing import ListState
from services.media import get_media_storage, upload_product_media
from services.products import (
    PRODUCT_SORT_COLUMNS,
    create_product,
    deactivate_bundle,
    deactivate_product,
    export_products_csv,
    get_product_or_404,
    import_products_csv,
    list_bundles,
    list_products,
    product_to_dict,
    update_product,
)
from utils import utc_now

logger = logging.getLogger(__name__)

products_bp = Blueprint("products", __name__)
products_api_bp = Blueprint("products_api", __name__, url_prefix="/api")

FORM_FIELDS = (
    "name",
    "description",
    "category",
    "monthly_price",
    "stock_quantity",
    "status",
    "image_url",
    "video_url",
)


# ---------------------------------------------------------------------------
# JSON API
# ---------------------------------------------------------------------------

@products_api_bp.route("/admin/products", methods=["GET"])
@handle_api_errors
def api_list():
    rows, meta = list_products(request.args)
    return success_response(rows, meta=meta)


@products_api_bp.route("/admin/products", methods=["POST"])
@handle_api_errors
def api_create():
    product = create_product(json_body())
    return success_response(product_to_dict(product), status=201)


@products_api_bp.route("/admin/products/<product_id>", methods=["GET"])
@handle_api_errors
def api_detail(product_id):
    return success_response(product_to_dict(get_product_or_404(product_id)))


@products_api_bp.route("/admin/products/<product_id>", methods=["PATCH"])
@handle_api_errors
def api_update(product_id):
    product = update_product(product_id, json_body())
    return success_response(product_to_dict(product))


@products_api_bp.route("/admin/products/<product_id>", methods=["DELETE"])
@handle_api_errors
def api_deactivate(product_id):
    product = deactivate_product(product_id)
    return success_response(product_to_dict(product))


@products_api_bp.route("/admin/products/export", methods=["GET"])
@handle_api_errors
def api_export():
    content = export_products_csv(request.args)
    filename = f"products-{utc_now():%Y-%m-%d}.csv"
    return Response(
        content,
        mimetype="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-store",
        },
    )


@products_api_bp.route("/admin/products/import", methods=["POST"])
@handle_api_errors
def api_import():
    upload = request.files.get("file")
    filename = upload.filename if upload else None
    content = upload.read() if upload else b""
    imported = import_products_csv(filename, content)
    return success_response({"imported": imported}, status=201)


@products_api_bp.route("/admin/products/media-upload", methods=["POST"])
@handle_api_errors
def api_media_upload():
    config = current_app.config["MEDIA_CONFIG"]
    upload = request.files.get("file")
    stored = upload_product_media(
        get_media_storage(config),
        config,
        request.form.get("mediaType", ""),
        upload.filename if upload else None,
        upload.mimetype if upload else None,
        upload.read() if upload else None,
        request.form.get("duration_seconds"),
    )
    return success_response(stored.to_dict(), status=201)


@products_api_bp.route("/bundles", methods=["GET"])
@handle_api_errors
def api_list_bundles():
    rows, meta = list_bundles(request.args)
    return success_response(rows, meta=meta)


@products_api_bp.route("/bundles/<bundle_id>", methods=["DELETE"])
@handle_api_errors
def api_deactivate_bundle(bundle_id):
    bundle = deactivate_bundle(bundle_id)
    return success_response({"id": bundle.id, "is_active": bundle.is_active})


# ---------------------------------------------------------------------------
# Admin screens
# ---------------------------------------------------------------------------

def _form_payload() -> dict:
    return {field: request.form.get(field, "") for field in FORM_FIELDS}


def _list_state() -> ListState:
    return ListState.from_args(
        request.args,
        filter_keys=("category", "status"),
        sort_columns=PRODUCT_SORT_COLUMNS,
        default_sort="created_at",
    )


@products_bp.route("/admin/products")
@role_required("manage_all")
def product_list():
    state = _list_state()
    rows, meta = list_products(state.to_args())
    return render_template(
        "admin/products.html",
        rows=rows,
        state=state,
        window=state.window(meta["total"]),
        categories=PRODUCT_CATEGORIES,
        statuses=VALID_PRODUCT_STATUSES,
    )


@products_bp.route("/admin/products/new", methods=["GET", "POST"])
@role_required("manage_all")
def product_new():
    if request.method == "POST":
        payload = _form_payload()
        try:
            product = create_product(payload)
        except DesklyError as exc:
            db.session.rollback()
            flash(exc.message, "danger")
            return render_template(
                "admin/product_form.html",
                product=payload,
                categories=PRODUCT_CATEGORIES,
                statuses=VALID_PRODUCT_STATUSES,
            )
        flash(f"Product {product.product_code} created.", "success")
        return redirect(url_for("products.product_list"))
    return render_template(
        "admin/product_form.html",
        product={"status": "draft"},
        categories=PRODUCT_CATEGORIES,
        statuses=VALID_PRODUCT_STATUSES,
    )


@products_bp.route("/admin/products/<product_id>", methods=["GET", "POST"])
@role_required("manage_all")
def product_edit(product_id):
    try:
        product = product_to_dict(get_product_or_404(product_id))
    except DesklyError as exc:
        flash(exc.message, "danger")
        return redirect(url_for("products.product_list"))

    if request.method == "POST":
        payload = _form_payload()
        try:
            update_product(product_id, payload)
        except DesklyError as exc:
            db.session.rollback()
            flash(exc.message, "danger")
            product.update(payload)
        else:
            flash("Product updated.", "success")
            return redirect(url_for("products.product_list"))

    return render_template(
        "admin/product_form.html",
        product=product,
        categories=PRODUCT_CATEGORIES,
        statuses=VALID_PRODUCT_STATUSES,
    )


@products_bp.route("/admin/products/<product_id>/deactivate", methods=["POST"])
@role_required("manage_all")
def product_deactivate(product_id):
    try:
        product = deactivate_product(product_id)
    except DesklyError as exc:
        db.session.rollback()
        flash(exc.message, "danger")
    else:
        flash(f"Product {product.product_code} deactivated.", "success")
    return redirect(url_for("products.product_list"))


@products_bp.route("/admin/products/import", methods=["POST"])
@role_required("manage_all")
def product_import():
    upload = request.files.get("file")
    try:
        imported = import_products_csv(
            upload.filename if upload else None, upload.read() if upload else b""
        )
    except DesklyError as exc:
        db.session.rollback()
        flash(exc.message, "danger")
        for error in (exc.meta or {}).get("errors", []):
            flash(error, "danger")
    else:
        flash(f"Imported {imported} products as drafts.", "success")
    return redirect(url_for("products.product_list"))
