"""Customer and admin account management."""

from __future__ import annotations

import logging
from typing import Optional

from extensions import db
from models import ROLE_LABELS, BillingCustomer, Company, Profile, Subscription, User
from services.audit import log_action
from services.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from services.listing import Pagination, matches_search
from utils import clean_text, compact_id, format_date, isoformat, parse_uuid

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Display helpers
# ---------------------------------------------------------------------------

def resolve_user_name(user: Optional[User]) -> Optional[str]:
    """Profile full name, then the signup metadata name."""
    if user is None:
        return None
    if user.profile and clean_text(user.profile.full_name):
        return clean_text(user.profile.full_name)
    return clean_text(user.full_name) or clean_text(user.display_name)


def customer_label(user: Optional[User], user_id: Optional[str]) -> str:
    """Name shown on order rows: resolved name, email, then ``User XXXXXXXX``."""
    name = resolve_user_name(user)
    if name:
        return name
    if user is not None and clean_text(user.email):
        return user.email
    return f"User {compact_id(user_id or '')}"


def compose_address(line1, city, zip_postal) -> Optional[str]:
    """``"line1, city zip"`` with empty parts dropped."""
    locality = " ".join(part for part in (clean_text(city), clean_text(zip_postal)) if part)
    parts = [part for part in (clean_text(line1), locality) if part]
    return ", ".join(parts) or None


def user_row(user: User) -> dict:
    return {
        "id": user.id,
        "name": resolve_user_name(user) or "N/A",
        "email": user.email or "No Email",
        "role": ROLE_LABELS.get(user.role, user.role.title()),
        "joinedDate": format_date(user.created_at),
    }


def profile_dict(profile: Optional[Profile]) -> Optional[dict]:
    if profile is None:
        return None
    return {
        "full_name": profile.full_name,
        "phone_number": profile.phone_number,
        "job_title": profile.job_title,
        "updated_at": isoformat(profile.updated_at),
    }


def company_dict(company: Optional[Company]) -> Optional[dict]:
    if company is None:
        return None
    return {
        "company_name": company.company_name,
        "registration_number": company.registration_number,
        "industry": company.industry,
        "team_size": company.team_size,
        "office_address": compose_address(
            company.address, company.office_city, company.office_zip_postal
        ),
        "delivery_address": compose_address(
            company.delivery_address, company.delivery_city, company.delivery_zip_postal
        ),
    }


# ---------------------------------------------------------------------------
# Listing / detail
# ---------------------------------------------------------------------------

def list_users(admins: bool, args) -> tuple[list[dict], dict]:
    """Rows for the customers (``admins=False``) or admins listing.

    Search runs over the mapped rows, so paging happens in memory.
    """
    pagination = Pagination.from_args(args)
    query = User.query
    if admins:
        query = query.filter(User.role == "admin")
    else:
        query = query.filter(User.role != "admin")
    rows = [user_row(user) for user in query.order_by(User.created_at.desc()).all()]

    search = args.get("search") or ""
    if search.strip():
        rows = [
            row for row in rows
            if matches_search(search, row["id"], row["name"], row["email"], row["role"])
        ]
    return pagination.slice(rows), pagination.meta(len(rows))


def get_user_or_404(raw_id) -> User:
    user_id = parse_uuid(raw_id)
    if not user_id:
        raise ValidationError("Invalid customer ID format")
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("Customer not found")
    return user


def customer_detail(raw_id) -> dict:
    user = get_user_or_404(raw_id)
    detail = user_row(user)
    # A missing profile is normal for freshly signed-up accounts
    detail["profile"] = profile_dict(user.profile)
    detail["company"] = company_dict(user.company)
    detail["subscription_count"] = Subscription.query.filter_by(user_id=user.id).count()
    return detail


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

def _delete_user(user: User) -> None:
    if Subscription.query.filter_by(user_id=user.id).first():
        raise ConflictError(
            "Customer has subscriptions and cannot be deleted. Cancel them first."
        )
    BillingCustomer.query.filter_by(user_id=user.id).update({"user_id": None})
    log_action("delete", "user", user.id, f"deleted: {user.email}")
    db.session.delete(user)
    db.session.commit()
    logger.info("Deleted user %s", user.id)


def delete_customer(raw_id) -> None:
    if not clean_text(raw_id):
        raise ValidationError("Customer ID is required")
    user = get_user_or_404(raw_id)
    if user.role == "admin":
        raise ForbiddenError("Use the /api/admins endpoint to delete admins.")
    _delete_user(user)


def delete_admin(raw_id, current_user: Optional[User], super_admin_email: str) -> None:
    if not clean_text(raw_id):
        raise ValidationError("Admin ID is required")
    user_id = parse_uuid(raw_id)
    if not user_id:
        raise ValidationError("Invalid admin ID format")
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("Admin not found")
    if super_admin_email and (user.email or "").lower() == super_admin_email:
        raise ForbiddenError("Cannot delete Super Admin user.")
    if current_user is not None and current_user.id == user.id:
        raise ForbiddenError("You cannot delete your own account.")
    if user.role != "admin":
        raise ValidationError("User is not an admin")
    _delete_user(user)
