from flask import Blueprint

from opshub.api import get_json_payload, parse_int_field, require_fields, success_response
from opshub.errors import NotFoundError
from opshub.extensions import db
from opshub.models import Collection
from opshub.permissions import current_user_context, require_permissions

bp = Blueprint("collections", __name__, url_prefix="/api/collections")

TEXT_FIELDS = ("name", "prefix", "description", "image_url")


def _get_collection(collection_id: int) -> Collection:
    collection = db.session.get(Collection, collection_id)
    if collection is None:
        raise NotFoundError("Collection not found")
    return collection


@bp.get("")
@require_permissions()
def list_collections():
    collections = Collection.query.order_by(
        Collection.display_order.asc().nulls_last(), Collection.id.asc()
    ).all()
    return success_response([collection.to_dict() for collection in collections])


@bp.post("")
@require_permissions()
def create_collection():
    data = get_json_payload()
    require_fields(data, "name")

    display_order = 1
    if data.get("display_order"):
        display_order = parse_int_field(data, "display_order")

    collection = Collection(
        name=str(data["name"]).strip(),
        prefix=data.get("prefix"),
        description=data.get("description"),
        image_url=data.get("image_url") or "",
        display_order=display_order,
        is_active=data.get("is_active") is not False,
        metadata_json={"designer": data.get("designer") or current_user_context().email},
    )
    db.session.add(collection)
    db.session.commit()
    return success_response(collection.to_dict(), status=201)


@bp.get("/<int:collection_id>")
@require_permissions()
def get_collection(collection_id: int):
    return success_response(_get_collection(collection_id).to_dict())


@bp.route("/<int:collection_id>", methods=["PUT", "PATCH"])
@require_permissions()
def update_collection(collection_id: int):
    collection = _get_collection(collection_id)
    data = get_json_payload()

    if "name" in data:
        require_fields(data, "name")
    for name in TEXT_FIELDS:
        if name in data:
            setattr(collection, name, data[name])
    if "display_order" in data:
        collection.display_order = parse_int_field(data, "display_order")
    if "is_active" in data:
        collection.is_active = data["is_active"] is not False
    if "designer" in data:
        metadata = dict(collection.metadata_json or {})
        metadata["designer"] = data["designer"] or ""
        collection.metadata_json = metadata

    db.session.commit()
    return success_response(collection.to_dict())


@bp.delete("/<int:collection_id>")
@require_permissions()
def delete_collection(collection_id: int):
    collection = _get_collection(collection_id)
    db.session.delete(collection)
    db.session.commit()
    return success_response({"id": collection_id})
