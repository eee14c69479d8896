"""Label and annotation keys shared by every record previewd writes.

Namespaces and ApplicationSets live outside the Environment's own boundary,
so ownership cannot use structural owner references; the owner triple below
is written instead. It is checked before a shared record is overwritten and
again by the deletion path.
"""

import re

from previewd.config import settings
from previewd.errors import ValidationError

PREFIX = "preview.previewd.io"

LABEL_PR = f"{PREFIX}/pr"
LABEL_REPOSITORY = f"{PREFIX}/repository"
LABEL_SERVICE = f"{PREFIX}/service"
LABEL_MANAGED_BY = f"{PREFIX}/managed-by"
MANAGED_BY = "previewd"

ANNOTATION_OWNER_NAME = f"{PREFIX}/owner-name"
ANNOTATION_OWNER_NAMESPACE = f"{PREFIX}/owner-namespace"
ANNOTATION_OWNER_UID = f"{PREFIX}/owner-uid"

_MAX_LABEL_VALUE = 63


def base_labels(pr_number: int) -> dict[str, str]:
    return {LABEL_PR: str(pr_number), LABEL_MANAGED_BY: MANAGED_BY}


def repository_label(repository: str) -> str:
    """A valid label value for owner/name (<= 63 chars, alphanumeric at both ends)."""
    sanitized = re.sub(r"[^a-z0-9-]", "-", repository.lower())
    sanitized = re.sub(r"-+", "-", sanitized).strip("-")
    return sanitized[:_MAX_LABEL_VALUE].rstrip("-")


def owner_annotations(env) -> dict[str, str]:
    return {
        ANNOTATION_OWNER_NAME: env.name,
        ANNOTATION_OWNER_NAMESPACE: settings.CONTROL_NAMESPACE,
        ANNOTATION_OWNER_UID: str(env.id),
    }


def owned_by(body: dict, owner_uid: str) -> bool:
    """True if body carries no owner, or carries this owner."""
    annotations = body.get("metadata", {}).get("annotations") or {}
    recorded = annotations.get(ANNOTATION_OWNER_UID)
    return recorded is None or recorded == str(owner_uid)


def ensure_owned(body: dict, env, what: str) -> None:
    """Raise ValidationError if body already belongs to another environment."""
    if owned_by(body, env.id):
        return
    annotations = body.get("metadata", {}).get("annotations") or {}
    owner = annotations.get(ANNOTATION_OWNER_NAME, "unknown")
    raise ValidationError(f"{what} belongs to environment '{owner}', not '{env.name}'")
