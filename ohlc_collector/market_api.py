"""
Client for the Cryptowatch-style OHLC market data API.

One request is issued per series: ``GET <base>/<exchange>/<ticker>/ohlc``
with the series granularity in ``periods`` and, when a watermark exists, the
first second after it in ``after``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests
from dacite import from_dict, Config, DaciteError

from .catalog import Series
from .errors import FetchError

logger = logging.getLogger(__name__)


@dataclass
class Allowance:
    cost: Optional[float] = None
    remaining: Optional[float] = None


@dataclass
class RawSeriesBundle:
    """Decoded API response holding one row sequence per granularity."""
    result: Dict[str, List[List[Any]]]
    allowance: Allowance = field(default_factory=Allowance)
    error: str = ""

    def rows_for(
        self,
        series: Series,
        granularity_keys: Optional[Mapping[int, str]] = None
    ) -> List[List[Any]]:
        """
        Return the rows for the series' granularity, ignoring the others.

        :param series: Series whose rows to select
        :param granularity_keys: Granularity seconds -> result key, usually the catalog's
        """
        if granularity_keys is None:
            key = series.result_key
        else:
            key = granularity_keys[series.granularity_seconds]
        return self.result.get(key) or []


class CryptowatchAPI:

    OHLC_ENDPOINT = "ohlc"

    def __init__(self, base_url: str, timeout_seconds: float = 30):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def build_api(self, series: Series, after_unix_time: Optional[int] = None) -> Tuple[str, Dict[str, str]]:
        """
        Build the endpoint and query parameters for one series.

        :param series: Series to fetch
        :param after_unix_time: Last ingested unix time, None on the first run
        :return: (endpoint, params)
        """
        api_endpoint = (f"{self.base_url}/"
                        f"{series.exchange_id}/"
                        f"{series.ticker}/"
                        f"{self.OHLC_ENDPOINT}"
                        )

        params = {"periods": str(series.granularity_seconds)}

        # the upstream bound is inclusive, so start one second after the watermark
        if after_unix_time is not None:
            params["after"] = str(int(after_unix_time) + 1)

        return api_endpoint, params

    def make_request(self, endpoint: str, params: Dict[str, str]) -> requests.Response:
        try:
            return requests.get(endpoint, params=params, timeout=self.timeout_seconds)
        except requests.RequestException as e:
            raise FetchError(f"API request failed for {endpoint}: {e}") from e

    def build_response(self, response: requests.Response) -> RawSeriesBundle:
        """
        Decode an API response into a RawSeriesBundle.

        :raises FetchError: on non-200 status, undecodable or malformed payload,
                            or a non-empty error field
        """
        if response.status_code != 200:
            raise FetchError(f"API returned status {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
        except ValueError as e:
            raise FetchError(f"API response is not valid JSON: {e}") from e

        if not isinstance(payload, dict):
            raise FetchError(f"API response is not a JSON object: {type(payload).__name__}")

        if payload.get("error"):
            raise FetchError(f"Cryptowatch error: {payload['error']}")

        result = payload.get("result")
        if not isinstance(result, dict):
            raise FetchError("API response has no result object")
        for key, rows in result.items():
            if rows is not None and not (isinstance(rows, list) and all(isinstance(r, list) for r in rows)):
                raise FetchError(f"API result for periods={key} is not a list of rows")

        try:
            bundle = from_dict(
                data_class=RawSeriesBundle,
                data={
                    "result": {key: rows or [] for key, rows in result.items()},
                    "allowance": payload.get("allowance") or {},
                    "error": payload.get("error") or ""
                },
                config=Config(check_types=False)
            )
        except DaciteError as e:
            raise FetchError(f"Malformed API payload: {e}") from e

        logger.debug(f"API allowance: cost={bundle.allowance.cost}, remaining={bundle.allowance.remaining}")
        return bundle

    def fetch(self, series: Series, after_unix_time: Optional[int] = None) -> RawSeriesBundle:
        """
        Fetch the raw bucket rows for one series.

        :param series: Series to fetch
        :param after_unix_time: Last ingested unix time, None on the first run
        :return: RawSeriesBundle
        :raises FetchError: on any transport, status or payload failure
        """
        endpoint, params = self.build_api(series, after_unix_time)
        logger.info(f"Fetching {series.table_name}: {endpoint} {params}")

        try:
            response = self.make_request(endpoint, params)
            bundle = self.build_response(response)
        except FetchError as e:
            e.table_name = series.table_name
            raise

        logger.info(
            f"Fetched {len(bundle.rows_for(series))} rows for {series.table_name} "
            f"(allowance remaining: {bundle.allowance.remaining})"
        )
        return bundle
