"""
Shared Alibaba Cloud API plumbing.

Every provider call in the project (ECS, BSS billing, CDT traffic) goes
through :func:`call_api`, which builds a ``CommonRequest``, decodes the JSON
body and converts SDK exceptions into :class:`ProviderError`.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from aliyunsdkcore.acs_exception.exceptions import ClientException, ServerException
from aliyunsdkcore.client import AcsClient
from aliyunsdkcore.request import CommonRequest

from config.settings import settings

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """An Alibaba Cloud API call failed."""

    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(message)
        self.code = code

    def __str__(self) -> str:
        message = super().__str__()
        if self.code:
            return f"[{self.code}] {message}"
        return message


def acs_client(region_id: str | None = None) -> AcsClient:
    """Return an AcsClient for *region_id* configured from settings."""
    return AcsClient(
        settings.ALIYUN_ACCESS_KEY_ID,
        settings.ALIYUN_ACCESS_KEY_SECRET,
        region_id or settings.ALIYUN_DEFAULT_REGION,
    )


def call_api(
    client: AcsClient,
    action: str,
    version: str,
    params: dict[str, Any] | None = None,
    domain: str = "",
    product: str = "",
) -> dict[str, Any]:
    """
    Invoke an RPC-style API action and return the decoded JSON response.

    Either *domain* (fixed endpoint) or *product* (endpoint resolved from the
    client's region) must be given.

    Raises
    ------
    ProviderError
        On any client-side, server-side or decoding failure.
    """
    request = CommonRequest()
    request.set_accept_format("json")
    request.set_method("POST")
    request.set_protocol_type("https")
    request.set_version(version)
    request.set_action_name(action)
    if domain:
        request.set_domain(domain)
    if product:
        request.set_product(product)
    for key, value in (params or {}).items():
        request.add_query_param(key, value)

    try:
        body = client.do_action_with_exception(request)
    except ServerException as exc:
        raise ProviderError(f"{action} failed: {exc.get_error_msg()}", code=exc.get_error_code()) from exc
    except ClientException as exc:
        raise ProviderError(f"{action} failed: {exc.get_error_msg()}", code=exc.get_error_code()) from exc

    try:
        return json.loads(body)
    except (TypeError, ValueError) as exc:
        raise ProviderError(f"{action} returned an unreadable response: {exc}") from exc
