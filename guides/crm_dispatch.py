"""Example showing a direct field update against an external CRM webhook."""

import asyncio
import os

from leadflow import FieldUpdateDispatcher, FieldUpdateRequest, get_repository
from leadflow.config import load_config


async def main():
    """Push a lead status to the CRM, converting the label via its field catalog."""
    config = load_config()
    config.crm.webhook_url = config.crm.webhook_url or os.getenv(
        "CRM_WEBHOOK", "https://example.invalid/rest/1/token/crm.lead.update.json"
    )
    dispatcher = FieldUpdateDispatcher(get_repository(), config=config)

    result = await dispatcher.dispatch(
        FieldUpdateRequest(
            entity_id=42,
            acting_user="guide",
            field="STATUS_ID",
            value="Hot",
            enumeration_fields=[
                {
                    "FIELD_NAME": "STATUS_ID",
                    "type": "enumeration",
                    "items": [{"ID": "7", "VALUE": "Hot"}],
                }
            ],
        )
    )

    print(f"{'✅' if result.ok else '❌'} {result.message}")


if __name__ == "__main__":
    asyncio.run(main())
