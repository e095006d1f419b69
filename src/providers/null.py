"""null_resource: a resource with no side effects.

Useful for ordering and for carrying values between resources. Any
attribute may be set and every change forces replacement.
"""

import logging
import uuid
from typing import Optional

from providers.base import ResourceSchema

logger = logging.getLogger(__name__)


class NullProvider:
    """Provider for null_resource."""

    schema = ResourceSchema(
        type_name='null_resource',
        outputs=('id',),
        allow_extra=True,
        replace_on_any_change=True,
    )

    def create(self, attrs: dict) -> dict:
        state = {'id': uuid.uuid4().hex}
        logger.debug(f"[null_resource] created {state['id']}")
        return state

    def update(self, attrs: dict, state: dict) -> dict:
        return dict(state)

    def destroy(self, state: dict) -> None:
        logger.debug(f"[null_resource] destroyed {state.get('id')}")

    def read(self, state: dict) -> Optional[dict]:
        return dict(state)
