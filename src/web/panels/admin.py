from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from services import accounts, groups, llm_registry, settings
from services.errors import Conflict, NotFound, ServiceError, ValidationFailed
from web.panels.dispatcher import EventContext, Outcome, require_admin
from web.panels.forms import (
    ConfigParseError,
    encode_json_config,
    format_errors,
    parse_bool,
    parse_decimal,
    parse_int,
    parse_json_config,
    string_form,
)
from web.panels.formatting import format_decimal
from web.panels.payloads import (
    group_payload,
    invitation_payload,
    membership_payload,
    model_payload,
    provider_payload,
    user_payload,
)
from web.panels.router import LoadContext, TabSpec
from web.panels.state import Existing, New, Notice
from web.panels.usage import load_usage, normalize_period
from web.realtime import connection_count

logger = logging.getLogger(__name__)

PROVIDER_FORM_FIELDS = (
    "name",
    "provider_type",
    "api_key",
    "provider_config_json",
    "instance_wide",
    "status",
)
MODEL_FORM_FIELDS = (
    "name",
    "provider_id",
    "model_id",
    "model_type",
    "model_config_json",
    "instance_wide",
    "status",
    "input_cost_per_million",
    "output_cost_per_million",
)

TEMP_PASSWORD_SET = "Temporary password set. User must change it on next login."
TEMP_PASSWORD_FAILED = "Failed to set password. Ensure it is at least 12 characters."
PROVIDER_DELETE_FAILED = "Failed to delete provider. Remove its models first."
PROVIDER_NOT_FOUND = "Provider not found"
PROVIDER_DELETE_DENIED = "Failed to delete provider"


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def _load_usage(ctx: LoadContext) -> dict[str, Any]:
    period = normalize_period(ctx.param("period"))
    return {"period": period, "usage": load_usage(ctx.session, period)}


def _load_servers(ctx: LoadContext) -> dict[str, Any]:
    return {
        "config": ctx.config.to_payload(),
        "registration_open": settings.registration_open(ctx.session),
        "realtime_connections": connection_count(),
    }


def _load_users(ctx: LoadContext) -> dict[str, Any]:
    base_url = ctx.config.public_base_url.rstrip("/")
    return {
        "users": [user_payload(user) for user in accounts.list_users(ctx.session)],
        "invitations": [
            invitation_payload(invitation, base_url)
            for invitation in accounts.list_invitations(ctx.session)
        ],
    }


def _load_groups(ctx: LoadContext) -> dict[str, Any]:
    data: dict[str, Any] = {
        "groups": [group_payload(group) for group in groups.list_all_groups(ctx.session)],
        "group_detail": None,
        "group_members": [],
    }
    group_id = parse_int(ctx.param("group_id"))
    if ctx.param("group_id") is not None:
        if group_id is None:
            raise NotFound("Group", ctx.param("group_id"))
        group = groups.get_group(ctx.session, group_id)
        data["group_detail"] = group_payload(group)
        data["group_members"] = [
            membership_payload(membership)
            for membership in groups.list_members(ctx.session, group_id)
        ]
    return data


def _load_providers(ctx: LoadContext) -> dict[str, Any]:
    return {
        "providers": [
            provider_payload(provider)
            for provider in llm_registry.list_providers(ctx.session, ctx.user_id)
        ]
    }


def _load_models(ctx: LoadContext) -> dict[str, Any]:
    return {
        "models": [
            model_payload(model) for model in llm_registry.list_models(ctx.session, ctx.user_id)
        ],
        "providers": [
            provider_payload(provider)
            for provider in llm_registry.list_providers(ctx.session, ctx.user_id)
        ],
    }


ADMIN_TABS = [
    TabSpec("admin_usage", _load_usage, admin_only=True),
    TabSpec("admin_servers", _load_servers, admin_only=True),
    TabSpec("admin_users", _load_users, admin_only=True),
    TabSpec("admin_groups", _load_groups, admin_only=True, fallback="admin_groups"),
    TabSpec("admin_providers", _load_providers, admin_only=True),
    TabSpec("admin_models", _load_models, admin_only=True),
]


# ---------------------------------------------------------------------------
# Usage and servers
# ---------------------------------------------------------------------------


@require_admin
def admin_usage_period(ctx: EventContext) -> Outcome:
    return ctx.navigate("admin_usage", period=normalize_period(ctx.param("period")))


@require_admin
def toggle_registration(ctx: EventContext) -> Outcome:
    try:
        settings.toggle_registration(ctx.session)
    except ServiceError as exc:
        logger.warning("Failed to toggle registration: %s", exc)
        return ctx.update(ctx.view, Notice.error("Failed to toggle registration"))
    return ctx.navigate("admin_servers")


# ---------------------------------------------------------------------------
# Users and invitations
# ---------------------------------------------------------------------------


def _set_role(ctx: EventContext, change: Callable[[Session, int], Any]) -> Outcome:
    user_id = parse_int(ctx.param("id"))
    try:
        if user_id is None:
            raise NotFound("User", ctx.param("id"))
        change(ctx.session, user_id)
    except NotFound as exc:
        return ctx.reload(Notice.error(str(exc)))
    return ctx.reload()


@require_admin
def promote_user(ctx: EventContext) -> Outcome:
    return _set_role(ctx, accounts.promote)


@require_admin
def demote_user(ctx: EventContext) -> Outcome:
    return _set_role(ctx, accounts.demote)


def show_temp_password_form(ctx: EventContext) -> Outcome:
    user_id = parse_int(ctx.param("id"))
    if user_id is None:
        return ctx.unchanged()
    return ctx.update(ctx.view.start_editing("temp_password", Existing(user_id)))


def cancel_temp_password(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.stop_editing("temp_password"))


@require_admin
def set_temp_password(ctx: EventContext) -> Outcome:
    user_id = parse_int(ctx.param("user_id"))
    try:
        if user_id is None:
            raise NotFound("User", ctx.param("user_id"))
        accounts.set_temporary_password(ctx.session, user_id, ctx.param("password") or "")
    except (ValidationFailed, NotFound):
        return ctx.update(ctx.view, Notice.error(TEMP_PASSWORD_FAILED))
    return ctx.navigate("admin_users", Notice.info(TEMP_PASSWORD_SET))


@require_admin
def create_invitation(ctx: EventContext) -> Outcome:
    try:
        invitation = accounts.create_invitation(
            ctx.session, ctx.param("email") or "", ctx.user_id
        )
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Failed to create invitation"))
    state, notice = ctx.navigate("admin_users", Notice.info("Invitation created"))
    base_url = ctx.config.public_base_url.rstrip("/")
    view = state.view.with_data(new_invitation=invitation_payload(invitation, base_url))
    return state.with_view(view), notice


@require_admin
def revoke_invitation(ctx: EventContext) -> Outcome:
    invitation_id = parse_int(ctx.param("id"))
    try:
        if invitation_id is None:
            raise NotFound("Invitation", ctx.param("id"))
        accounts.revoke_invitation(ctx.session, invitation_id)
    except Conflict:
        return ctx.update(ctx.view, Notice.error("Cannot revoke a used invitation"))
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Failed to revoke invitation"))
    return ctx.navigate("admin_users", Notice.info("Invitation revoked"))


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@require_admin
def create_group(ctx: EventContext) -> Outcome:
    try:
        groups.create_group(ctx.session, ctx.param("name") or "", ctx.user_id)
    except ValidationFailed as exc:
        return ctx.update(ctx.view, Notice.error(format_errors(exc)))
    return ctx.reload()


@require_admin
def admin_delete_group(ctx: EventContext) -> Outcome:
    group_id = parse_int(ctx.param("id"))
    try:
        if group_id is None:
            raise NotFound("Group", ctx.param("id"))
        groups.delete_group(ctx.session, group_id)
    except NotFound as exc:
        return ctx.update(ctx.view, Notice.error(str(exc)))
    if parse_int(ctx.view.params.get("group_id")) == group_id:
        return ctx.navigate("admin_groups")
    return ctx.reload()


@require_admin
def view_group(ctx: EventContext) -> Outcome:
    return ctx.navigate("admin_groups", group_id=ctx.param("id"))


def _open_group_id(ctx: EventContext) -> int | None:
    return parse_int(ctx.view.params.get("group_id"))


@require_admin
def admin_add_member(ctx: EventContext) -> Outcome:
    group_id = _open_group_id(ctx)
    if group_id is None:
        return ctx.unchanged()
    user = accounts.get_user_by_email(ctx.session, ctx.param("email") or "")
    if user is None:
        return ctx.update(ctx.view, Notice.error("User not found"))
    try:
        groups.add_member(ctx.session, group_id, user.id)
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Failed to add member"))
    return ctx.reload()


@require_admin
def admin_remove_member(ctx: EventContext) -> Outcome:
    group_id = _open_group_id(ctx)
    user_id = parse_int(ctx.param("user_id"))
    if group_id is None or user_id is None:
        return ctx.unchanged()
    try:
        groups.remove_member(ctx.session, group_id, user_id)
    except NotFound:
        return ctx.update(ctx.view, Notice.error("Failed to remove member"))
    return ctx.reload()


# ---------------------------------------------------------------------------
# LLM providers
# ---------------------------------------------------------------------------


def build_provider_attrs(params: Mapping[str, Any], user_id: int) -> dict[str, Any]:
    attrs: dict[str, Any] = {
        "name": params.get("name"),
        "provider_type": params.get("provider_type"),
        "provider_config": parse_json_config(params.get("provider_config_json")),
        "instance_wide": parse_bool(params.get("instance_wide")),
        "status": params.get("status") or "active",
        "user_id": user_id,
    }
    # A blank key on update keeps the stored one.
    if params.get("api_key"):
        attrs["api_key"] = params["api_key"]
    return attrs


def _provider_form(params: Mapping[str, Any]) -> dict[str, str]:
    form = string_form(params, PROVIDER_FORM_FIELDS)
    form["api_key"] = ""
    return form


def _editing_id(ctx: EventContext, kind: str) -> int | None:
    target = ctx.view.editing.get(kind)
    if ctx.param("id") is not None:
        return parse_int(ctx.param("id"))
    if isinstance(target, Existing):
        return parse_int(target.id)
    return None


def _save_failed(
    ctx: EventContext, kind: str, form: dict[str, str], exc: Exception, fallback: str
) -> Outcome:
    if isinstance(exc, ValidationFailed):
        message = format_errors(exc)
    elif isinstance(exc, ConfigParseError):
        message = str(exc)
    else:
        message = fallback
    return ctx.update(ctx.view.keep_form(kind, form), Notice.error(message))


@require_admin
def new_llm_provider(ctx: EventContext) -> Outcome:
    return ctx.update(
        ctx.view.start_editing("provider", New(), form=string_form({}, PROVIDER_FORM_FIELDS))
    )


@require_admin
def cancel_llm_provider(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.stop_editing("provider"))


@require_admin
def create_llm_provider(ctx: EventContext) -> Outcome:
    form = _provider_form(ctx.params)
    try:
        llm_registry.create_provider(ctx.session, build_provider_attrs(ctx.params, ctx.user_id))
    except (ConfigParseError, ServiceError) as exc:
        return _save_failed(ctx, "provider", form, exc, "Failed to create provider")
    return ctx.navigate("admin_providers", Notice.info("Provider created"))


@require_admin
def edit_llm_provider(ctx: EventContext) -> Outcome:
    provider_id = parse_int(ctx.param("id"))
    try:
        if provider_id is None:
            raise NotFound("Provider", ctx.param("id"))
        provider = llm_registry.get_provider(ctx.session, provider_id, ctx.user_id)
    except NotFound:
        return ctx.update(ctx.view, Notice.error("Provider not found"))
    form = {
        "name": provider.name,
        "provider_type": provider.provider_type,
        "api_key": "",
        "provider_config_json": encode_json_config(provider.provider_config),
        "instance_wide": "true" if provider.instance_wide else "false",
        "status": provider.status,
    }
    return ctx.update(ctx.view.start_editing("provider", Existing(provider.id), form=form))


@require_admin
def update_llm_provider(ctx: EventContext) -> Outcome:
    form = _provider_form(ctx.params)
    provider_id = _editing_id(ctx, "provider")
    try:
        if provider_id is None:
            raise NotFound("Provider", ctx.param("id"))
        llm_registry.update_provider(
            ctx.session,
            provider_id,
            ctx.user_id,
            build_provider_attrs(ctx.params, ctx.user_id),
        )
    except (ConfigParseError, ServiceError) as exc:
        return _save_failed(ctx, "provider", form, exc, "Failed to update provider")
    return ctx.navigate("admin_providers", Notice.info("Provider updated"))


@require_admin
def delete_llm_provider(ctx: EventContext) -> Outcome:
    provider_id = parse_int(ctx.param("id"))
    try:
        if provider_id is None:
            raise NotFound("Provider", ctx.param("id"))
        llm_registry.delete_provider(ctx.session, provider_id, ctx.user_id)
    except Conflict:
        return ctx.update(ctx.view, Notice.error(PROVIDER_DELETE_FAILED))
    except NotFound:
        return ctx.update(ctx.view, Notice.error(PROVIDER_NOT_FOUND))
    except ServiceError:
        return ctx.update(ctx.view, Notice.error(PROVIDER_DELETE_DENIED))
    return ctx.navigate("admin_providers", Notice.info("Provider deleted"))


# ---------------------------------------------------------------------------
# LLM models
# ---------------------------------------------------------------------------


def build_model_attrs(params: Mapping[str, Any], user_id: int) -> dict[str, Any]:
    return {
        "name": params.get("name"),
        "provider_id": params.get("provider_id"),
        "model_id": params.get("model_id"),
        "model_type": params.get("model_type") or "inference",
        "model_config": parse_json_config(params.get("model_config_json")),
        "instance_wide": parse_bool(params.get("instance_wide")),
        "status": params.get("status") or "active",
        "input_cost_per_million": parse_decimal(params.get("input_cost_per_million")),
        "output_cost_per_million": parse_decimal(params.get("output_cost_per_million")),
        "user_id": user_id,
    }


@require_admin
def new_llm_model(ctx: EventContext) -> Outcome:
    return ctx.update(
        ctx.view.start_editing("model", New(), form=string_form({}, MODEL_FORM_FIELDS))
    )


@require_admin
def cancel_llm_model(ctx: EventContext) -> Outcome:
    return ctx.update(ctx.view.stop_editing("model"))


@require_admin
def create_llm_model(ctx: EventContext) -> Outcome:
    form = string_form(ctx.params, MODEL_FORM_FIELDS)
    try:
        llm_registry.create_model(ctx.session, build_model_attrs(ctx.params, ctx.user_id))
    except (ConfigParseError, ServiceError) as exc:
        return _save_failed(ctx, "model", form, exc, "Failed to create model")
    return ctx.navigate("admin_models", Notice.info("Model created"))


@require_admin
def edit_llm_model(ctx: EventContext) -> Outcome:
    model_id = parse_int(ctx.param("id"))
    try:
        if model_id is None:
            raise NotFound("Model", ctx.param("id"))
        model = llm_registry.get_model(ctx.session, model_id, ctx.user_id)
    except NotFound:
        return ctx.update(ctx.view, Notice.error("Model not found"))
    form = {
        "name": model.name,
        "provider_id": str(model.provider_id),
        "model_id": model.model_id,
        "model_type": model.model_type,
        "model_config_json": encode_json_config(model.model_config),
        "instance_wide": "true" if model.instance_wide else "false",
        "status": model.status,
        "input_cost_per_million": format_decimal(model.input_cost_per_million),
        "output_cost_per_million": format_decimal(model.output_cost_per_million),
    }
    return ctx.update(ctx.view.start_editing("model", Existing(model.id), form=form))


@require_admin
def update_llm_model(ctx: EventContext) -> Outcome:
    form = string_form(ctx.params, MODEL_FORM_FIELDS)
    model_id = _editing_id(ctx, "model")
    try:
        if model_id is None:
            raise NotFound("Model", ctx.param("id"))
        llm_registry.update_model(
            ctx.session, model_id, ctx.user_id, build_model_attrs(ctx.params, ctx.user_id)
        )
    except (ConfigParseError, ServiceError) as exc:
        return _save_failed(ctx, "model", form, exc, "Failed to update model")
    return ctx.navigate("admin_models", Notice.info("Model updated"))


@require_admin
def delete_llm_model(ctx: EventContext) -> Outcome:
    model_id = parse_int(ctx.param("id"))
    try:
        if model_id is None:
            raise NotFound("Model", ctx.param("id"))
        llm_registry.delete_model(ctx.session, model_id, ctx.user_id)
    except ServiceError:
        return ctx.update(ctx.view, Notice.error("Failed to delete model"))
    return ctx.navigate("admin_models", Notice.info("Model deleted"))


ADMIN_HANDLERS = {
    "admin_usage_period": admin_usage_period,
    "toggle_registration": toggle_registration,
    "promote_user": promote_user,
    "demote_user": demote_user,
    "show_temp_password_form": show_temp_password_form,
    "cancel_temp_password": cancel_temp_password,
    "set_temp_password": set_temp_password,
    "create_invitation": create_invitation,
    "revoke_invitation": revoke_invitation,
    "create_group": create_group,
    "admin_delete_group": admin_delete_group,
    "view_group": view_group,
    "admin_add_member": admin_add_member,
    "admin_remove_member": admin_remove_member,
    "new_llm_provider": new_llm_provider,
    "cancel_llm_provider": cancel_llm_provider,
    "create_llm_provider": create_llm_provider,
    "edit_llm_provider": edit_llm_provider,
    "update_llm_provider": update_llm_provider,
    "delete_llm_provider": delete_llm_provider,
    "new_llm_model": new_llm_model,
    "cancel_llm_model": cancel_llm_model,
    "create_llm_model": create_llm_model,
    "edit_llm_model": edit_llm_model,
    "update_llm_model": update_llm_model,
    "delete_llm_model": delete_llm_model,
}
