from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from core.models import (
    ENTITY_STATUSES,
    MODEL_TYPES,
    PROVIDER_TYPES,
    LLMModel,
    LLMProvider,
)
from services.errors import Conflict, Forbidden, NotFound, Validator

logger = logging.getLogger(__name__)

PROVIDER_FIELDS = (
    "name",
    "provider_type",
    "api_key",
    "provider_config",
    "instance_wide",
    "status",
)
MODEL_FIELDS = (
    "name",
    "provider_id",
    "model_id",
    "model_type",
    "model_config",
    "instance_wide",
    "status",
    "input_cost_per_million",
    "output_cost_per_million",
)


def _validate_provider(
    session: Session, values: dict[str, Any], *, user_id: int, exclude_id: int | None
) -> None:
    validator = Validator()
    validator.required("name", values.get("name"))
    validator.required("provider_type", values.get("provider_type"))
    if values.get("provider_type"):
        validator.inclusion("provider_type", values.get("provider_type"), PROVIDER_TYPES)
    validator.inclusion("status", values.get("status"), ENTITY_STATUSES)
    if not isinstance(values.get("provider_config"), dict):
        validator.add("provider_config", "must be a map")
    name = str(values.get("name") or "").strip()
    if name:
        stmt = select(LLMProvider.id).where(
            LLMProvider.name == name, LLMProvider.user_id == user_id
        )
        if exclude_id is not None:
            stmt = stmt.where(LLMProvider.id != exclude_id)
        if session.execute(stmt).first():
            validator.add("name", "has already been taken")
    validator.check()


def _owned(entity, user_id: int, kind: str):
    if entity.user_id != user_id:
        raise Forbidden(kind)
    return entity


def list_providers(session: Session, user_id: int) -> list[LLMProvider]:
    return list(
        session.execute(
            select(LLMProvider)
            .where(or_(LLMProvider.user_id == user_id, LLMProvider.instance_wide.is_(True)))
            .order_by(LLMProvider.name)
        ).scalars()
    )


def get_provider(session: Session, provider_id: int, user_id: int) -> LLMProvider:
    provider = session.get(LLMProvider, provider_id)
    if provider is None or (provider.user_id != user_id and not provider.instance_wide):
        raise NotFound("Provider", provider_id)
    return provider


def create_provider(session: Session, attrs: dict[str, Any]) -> LLMProvider:
    values = {key: attrs[key] for key in PROVIDER_FIELDS if key in attrs}
    values.setdefault("provider_config", {})
    values.setdefault("status", "active")
    values.setdefault("instance_wide", False)
    user_id = attrs.get("user_id")
    _validate_provider(session, values, user_id=user_id, exclude_id=None)
    values["name"] = str(values["name"]).strip()
    provider = LLMProvider.create(session, user_id=user_id, **values)
    logger.info("Created LLM provider %s type=%s", provider.id, provider.provider_type)
    return provider


def update_provider(
    session: Session, provider_id: int, user_id: int, attrs: dict[str, Any]
) -> LLMProvider:
    provider = _owned(get_provider(session, provider_id, user_id), user_id, "provider")
    values = {key: attrs[key] for key in PROVIDER_FIELDS if key in attrs}
    merged = {
        "name": provider.name,
        "provider_type": provider.provider_type,
        "provider_config": provider.provider_config,
        "status": provider.status,
        **values,
    }
    _validate_provider(session, merged, user_id=user_id, exclude_id=provider.id)
    for key, value in values.items():
        setattr(provider, key, value)
    provider.name = str(provider.name).strip()
    session.flush()
    logger.info("Updated LLM provider %s", provider.id)
    return provider


def delete_provider(session: Session, provider_id: int, user_id: int) -> None:
    provider = _owned(get_provider(session, provider_id, user_id), user_id, "provider")
    in_use = session.execute(
        select(LLMModel.id).where(LLMModel.provider_id == provider.id).limit(1)
    ).first()
    if in_use:
        raise Conflict("has_models", "Provider still has models")
    session.delete(provider)
    session.flush()
    logger.info("Deleted LLM provider %s", provider_id)


def _validate_model(
    session: Session, values: dict[str, Any], *, user_id: int, exclude_id: int | None
) -> None:
    validator = Validator()
    validator.required("name", values.get("name"))
    validator.required("model_id", values.get("model_id"))
    validator.required("provider_id", values.get("provider_id"))
    validator.inclusion("model_type", values.get("model_type"), MODEL_TYPES)
    validator.inclusion("status", values.get("status"), ENTITY_STATUSES)
    if not isinstance(values.get("model_config"), dict):
        validator.add("model_config", "must be a map")
    for field in ("input_cost_per_million", "output_cost_per_million"):
        cost = values.get(field)
        if cost is not None and Decimal(cost) < 0:
            validator.add(field, "must be greater than or equal to 0")
    provider_id = values.get("provider_id")
    if provider_id not in (None, ""):
        try:
            get_provider(session, int(provider_id), user_id)
        except (TypeError, ValueError, NotFound):
            validator.add("provider_id", "does not exist")
        else:
            model_id = str(values.get("model_id") or "").strip()
            stmt = select(LLMModel.id).where(
                LLMModel.provider_id == int(provider_id),
                LLMModel.model_id == model_id,
            )
            if exclude_id is not None:
                stmt = stmt.where(LLMModel.id != exclude_id)
            if model_id and session.execute(stmt).first():
                validator.add("model_id", "has already been taken")
    validator.check()


def list_models(session: Session, user_id: int) -> list[LLMModel]:
    return list(
        session.execute(
            select(LLMModel)
            .options(selectinload(LLMModel.provider))
            .where(or_(LLMModel.user_id == user_id, LLMModel.instance_wide.is_(True)))
            .order_by(LLMModel.name)
        ).scalars()
    )


def list_active_models(session: Session, user_id: int) -> list[LLMModel]:
    return [model for model in list_models(session, user_id) if model.status == "active"]


def get_model(session: Session, model_id: int, user_id: int) -> LLMModel:
    model = session.get(LLMModel, model_id)
    if model is None or (model.user_id != user_id and not model.instance_wide):
        raise NotFound("Model", model_id)
    return model


def create_model(session: Session, attrs: dict[str, Any]) -> LLMModel:
    values = {key: attrs[key] for key in MODEL_FIELDS if key in attrs}
    values.setdefault("model_config", {})
    values.setdefault("model_type", "inference")
    values.setdefault("status", "active")
    values.setdefault("instance_wide", False)
    user_id = attrs.get("user_id")
    _validate_model(session, values, user_id=user_id, exclude_id=None)
    values["provider_id"] = int(values["provider_id"])
    values["name"] = str(values["name"]).strip()
    model = LLMModel.create(session, user_id=user_id, **values)
    logger.info("Created LLM model %s provider=%s", model.id, model.provider_id)
    return model


def update_model(
    session: Session, model_id: int, user_id: int, attrs: dict[str, Any]
) -> LLMModel:
    model = _owned(get_model(session, model_id, user_id), user_id, "model")
    values = {key: attrs[key] for key in MODEL_FIELDS if key in attrs}
    merged = {
        "name": model.name,
        "provider_id": model.provider_id,
        "model_id": model.model_id,
        "model_type": model.model_type,
        "model_config": model.model_config,
        "status": model.status,
        **values,
    }
    _validate_model(session, merged, user_id=user_id, exclude_id=model.id)
    if "provider_id" in values:
        values["provider_id"] = int(values["provider_id"])
    for key, value in values.items():
        setattr(model, key, value)
    session.flush()
    logger.info("Updated LLM model %s", model.id)
    return model


def delete_model(session: Session, model_id: int, user_id: int) -> None:
    model = _owned(get_model(session, model_id, user_id), user_id, "model")
    session.delete(model)
    session.flush()
    logger.info("Deleted LLM model %s", model_id)
