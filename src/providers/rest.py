"""http_resource: an object in a JSON REST collection.

Maps the provider contract onto plain HTTP verbs:

    create  -> POST   {base_url}/{collection}        (response must carry 'id')
    update  -> PUT    {base_url}/{collection}/{id}
    destroy -> DELETE {base_url}/{collection}/{id}   (404 is success)
    read    -> GET    {base_url}/{collection}/{id}   (404 means deleted)
"""

import logging
from typing import Any, Optional

import requests

from common import ProviderError
from providers.base import ResourceSchema

logger = logging.getLogger(__name__)


class HttpProvider:
    """Provider for http_resource.

    Attributes:
        base_url: Service root URL
        timeout: Per-request timeout in seconds
        headers: Extra headers sent with every request
        verify: TLS certificate verification
    """

    schema = ResourceSchema(
        type_name='http_resource',
        required=('collection',),
        optional=('body',),
        outputs=('id', 'url', 'response'),
        force_new=('collection',),
    )

    def __init__(self, base_url: str, timeout: float = 10, headers: Optional[dict] = None,
                 verify: bool = True):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.verify = verify

    def _request(self, method: str, url: str, body: Any = None) -> requests.Response:
        try:
            return requests.request(
                method,
                url,
                json=body,
                headers=self.headers,
                timeout=self.timeout,
                verify=self.verify,
            )
        except requests.exceptions.ConnectionError as e:
            raise ProviderError(f"Cannot connect to {url}: {e}")
        except requests.exceptions.Timeout:
            raise ProviderError(f"Timeout after {self.timeout}s: {method} {url}")
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {url} failed: {e}")

    @staticmethod
    def _check(resp: requests.Response, method: str, url: str) -> dict:
        if resp.status_code >= 400:
            raise ProviderError(
                f"{method} {url} returned {resp.status_code}: {resp.text[:200]}"
            )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            raise ProviderError(f"{method} {url} returned non-JSON body")
        if not isinstance(data, dict):
            raise ProviderError(f"{method} {url} returned {type(data).__name__}, expected object")
        return data

    def _state(self, collection: str, data: dict, fallback_id: Optional[str] = None) -> dict:
        obj_id = data.get('id', fallback_id)
        if obj_id is None:
            raise ProviderError(f"Response from {self.base_url}/{collection} has no 'id'")
        return {
            'id': str(obj_id),
            'url': f'{self.base_url}/{collection}/{obj_id}',
            'collection': collection,
            'response': data,
        }

    def create(self, attrs: dict) -> dict:
        collection = attrs['collection']
        url = f'{self.base_url}/{collection}'
        resp = self._request('POST', url, attrs.get('body', {}))
        state = self._state(collection, self._check(resp, 'POST', url))
        logger.info(f"[http_resource] created {state['url']}")
        return state

    def update(self, attrs: dict, state: dict) -> dict:
        url = state['url']
        resp = self._request('PUT', url, attrs.get('body', {}))
        data = self._check(resp, 'PUT', url)
        logger.info(f"[http_resource] updated {url}")
        return self._state(state['collection'], data or state.get('response', {}), state['id'])

    def destroy(self, state: dict) -> None:
        url = state['url']
        resp = self._request('DELETE', url)
        if resp.status_code == 404:
            logger.warning(f"[http_resource] {url} already gone")
            return
        self._check(resp, 'DELETE', url)
        logger.info(f"[http_resource] deleted {url}")

    def read(self, state: dict) -> Optional[dict]:
        url = state['url']
        resp = self._request('GET', url)
        if resp.status_code == 404:
            return None
        data = self._check(resp, 'GET', url)
        return self._state(state['collection'], data, state['id'])
