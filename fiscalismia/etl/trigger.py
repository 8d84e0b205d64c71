"""
Remote trigger for the serverless raw data ETL.

POSTs to the AWS API Gateway route that invokes the Raw_Data_ETL Lambda. The
Lambda pulls the source spreadsheet, splits it into one TSV per dataset,
uploads them to S3 and answers with presigned download URLs:

    HTTP 202
    {"presigned_urls": ["https://...s3.amazonaws.com/transformed/...-fixed_costs.tsv?X-Amz-...", ...]}
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .errors import LAMBDA_LOG_GROUP, ConfigError, ETLTriggerError

logger = logging.getLogger(__name__)

ACCEPTED = 202


class RemoteTriggerClient:
    """
    Invokes the ETL Lambda through API Gateway.

    Args:
        client: Shared HTTP client for the run
        endpoint: Full API Gateway route URL
        secret: Value sent as the Authorization header
        timeout: Seconds before the invocation is abandoned
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        secret: str | None,
        timeout: float = 10.0,
    ):
        self._client = client
        self.endpoint = endpoint
        self._secret = secret
        self.timeout = timeout

    async def trigger(self) -> list[str]:
        """
        Start the ETL and return the presigned URLs of its result files.

        Raises:
            ConfigError: API_GW_SECRET_KEY is missing (raised before any request)
            ETLTriggerError: transport failure, non-202 status or bad payload
        """
        if not self._secret or not self._secret.strip():
            raise ConfigError("API_GW_SECRET_KEY")

        logger.debug(f"Invoking {self.endpoint} to start ETL...")
        try:
            response = await self._client.post(
                self.endpoint,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": self._secret,
                },
                timeout=self.timeout,
            )
        except httpx.TimeoutException as exc:
            raise ETLTriggerError(f"Timed out after {self.timeout}s: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ETLTriggerError(f"{type(exc).__name__}: {exc}") from exc

        body = _parse_body(response)
        if response.status_code != ACCEPTED:
            logger.error(f"API Gateway responded [{response.status_code}]: {body}")
            raise ETLTriggerError(
                f"Expected HTTP {ACCEPTED}, got {response.status_code}: {_remote_message(body)}",
                remote_status=response.status_code,
                remote_body=body,
            )

        urls = body.get("presigned_urls") if isinstance(body, dict) else None
        if (
            not isinstance(urls, list)
            or not urls
            or not all(isinstance(url, str) and url for url in urls)
        ):
            raise ETLTriggerError(
                "API Gateway response does not include s3 presigned_urls. "
                f"Check Log Group {LAMBDA_LOG_GROUP}",
                remote_status=response.status_code,
                remote_body=body,
            )

        logger.info(f"API Gateway returned {len(urls)} presigned urls")
        return urls


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _remote_message(body: Any) -> str:
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    text = str(body) if body else "<empty body>"
    return text[:300]
