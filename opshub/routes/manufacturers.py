from datetime import datetime

from flask import Blueprint, request

from opshub.api import (
    filter_arg,
    get_json_payload,
    parse_decimal_field,
    parse_int_arg,
    parse_int_field,
    require_fields,
    success_response,
)
from opshub.errors import NotFoundError, ValidationError
from opshub.extensions import db
from opshub.models import Manufacturer, ManufacturerProject, ManufacturerStatus, Order
from opshub.permissions import require_permissions

bp = Blueprint("manufacturers", __name__, url_prefix="/api/manufacturers")

DEFAULT_LEAD_TIME_DAYS = 30
PROJECT_TEXT_FIELDS = ("name", "status", "priority", "notes")


def _manufacturer_payload(manufacturer: Manufacturer) -> dict:
    projects = manufacturer.projects
    last_project = max((project.created_at for project in projects), default=None)
    return {
        "id": manufacturer.id,
        "name": manufacturer.name or "",
        "contact_name": manufacturer.contact_person or "",
        "email": manufacturer.email or "",
        "phone": manufacturer.phone or "",
        "status": manufacturer.status or ManufacturerStatus.APPROVED,
        "capabilities": list(manufacturer.specialties or []),
        "rating": float(manufacturer.quality_rating) if manufacturer.quality_rating is not None else None,
        "total_projects": len(projects),
        "active_projects": sum(
            1 for project in projects if project.status in ManufacturerProject.ACTIVE_STATUSES
        ),
        "average_lead_time": manufacturer.lead_time_days or DEFAULT_LEAD_TIME_DAYS,
        "last_project_date": last_project.isoformat() if last_project else None,
        "created_at": manufacturer.created_at.isoformat() if manufacturer.created_at else None,
    }


def _validated_manufacturer_status(value) -> str:
    if value not in ManufacturerStatus.ALL:
        raise ValidationError(
            errors={"status": f"Must be one of {', '.join(ManufacturerStatus.ALL)}"}
        )
    return value


def _specialties(data) -> list[str]:
    value = data.get("specialties", data.get("capabilities")) or []
    if not isinstance(value, list):
        raise ValidationError(errors={"specialties": "Expected a list"})
    return [str(entry) for entry in value]


def _project_links(data, project: ManufacturerProject) -> None:
    if "manufacturer_id" in data:
        manufacturer_id = parse_int_field(data, "manufacturer_id")
        if db.session.get(Manufacturer, manufacturer_id) is None:
            raise ValidationError(errors={"manufacturer_id": "Manufacturer does not exist"})
        project.manufacturer_id = manufacturer_id
    if "order_id" in data:
        if data["order_id"] is None:
            project.order_id = None
        else:
            order_id = parse_int_field(data, "order_id")
            if db.session.get(Order, order_id) is None:
                raise ValidationError(errors={"order_id": "Order does not exist"})
            project.order_id = order_id


@bp.get("")
@require_permissions("production.read")
def list_manufacturers():
    status = filter_arg("status")
    limit = parse_int_arg("limit", 100, minimum=1, maximum=500)
    offset = parse_int_arg("offset", 0, minimum=0)

    query = Manufacturer.query
    if status:
        query = query.filter(Manufacturer.status == status)
    manufacturers = (
        query.order_by(Manufacturer.created_at.desc(), Manufacturer.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    data = [_manufacturer_payload(manufacturer) for manufacturer in manufacturers]
    return success_response(data, total=len(data))


@bp.post("")
@require_permissions("production.manage")
def create_manufacturer():
    data = get_json_payload()
    require_fields(data, "name")

    manufacturer = Manufacturer(
        name=str(data["name"]).strip(),
        contact_person=data.get("contact_person") or data.get("contact_name"),
        email=data.get("contact_email") or data.get("email"),
        phone=data.get("contact_phone") or data.get("phone"),
        status=_validated_manufacturer_status(data.get("status") or ManufacturerStatus.APPROVED),
        specialties=_specialties(data),
        lead_time_days=(
            parse_int_field(data, "lead_time_days", minimum=0)
            if data.get("lead_time_days") is not None
            else DEFAULT_LEAD_TIME_DAYS
        ),
        quality_rating=(
            parse_decimal_field(data, "quality_rating")
            if data.get("quality_rating") is not None
            else None
        ),
    )
    db.session.add(manufacturer)
    db.session.commit()
    return success_response(_manufacturer_payload(manufacturer), status=201)


@bp.get("/projects")
@require_permissions("production.read")
def list_projects():
    status = filter_arg("status")
    priority = filter_arg("priority")
    limit = parse_int_arg("limit", 50, minimum=1, maximum=500)

    query = ManufacturerProject.query
    if status:
        query = query.filter(ManufacturerProject.status == status)
    if priority:
        query = query.filter(ManufacturerProject.priority == priority)
    if request.args.get("manufacturerId"):
        query = query.filter(
            ManufacturerProject.manufacturer_id == parse_int_arg("manufacturerId", 0, minimum=1)
        )

    projects = (
        query.order_by(ManufacturerProject.created_at.desc(), ManufacturerProject.id.desc())
        .limit(limit)
        .all()
    )
    data = [project.to_dict() for project in projects]
    return success_response(data, total=len(data))


@bp.post("/projects")
@require_permissions("production.manage")
def create_project():
    data = get_json_payload()
    require_fields(data, "manufacturer_id", "name")

    project = ManufacturerProject()
    _project_links(data, project)
    for name in PROJECT_TEXT_FIELDS:
        if data.get(name) is not None:
            setattr(project, name, data[name])

    db.session.add(project)
    db.session.commit()
    return success_response(project.to_dict(), status=201)


@bp.put("/projects")
@require_permissions("production.manage")
def update_project():
    data = get_json_payload()
    require_fields(data, "id")

    project = db.session.get(ManufacturerProject, parse_int_field(data, "id"))
    if project is None:
        raise NotFoundError("Project not found")

    if "name" in data:
        require_fields(data, "name")
    _project_links(data, project)
    for name in PROJECT_TEXT_FIELDS:
        if name in data:
            setattr(project, name, data[name])
    project.updated_at = datetime.utcnow()

    db.session.commit()
    return success_response(project.to_dict())
