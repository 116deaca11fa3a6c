"""
Script to provision the Databox side: one data source plus one dataset per
registered schema. Prints the dataset ids to put into DATABOX_DATASET_ID_*.

    python scripts/setup_datasets.py "Activity metrics"
    python scripts/setup_datasets.py --data-source-id 123   # reuse a data source
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.logging import setup_logging
from ingestion.loaders.databox_admin import DataboxAdmin
from ingestion.transformers import available_schemas, get_schema
from ingestion.transport import build_default_transport

logger = logging.getLogger(__name__)


async def setup_datasets(title, data_source_id=None):
    admin = DataboxAdmin.from_settings(settings, build_default_transport(verify_tls=settings.HTTP_VERIFY_TLS))

    accounts = await admin.list_accounts()
    if accounts.success:
        logger.info(f"Databox accounts: {accounts.items}")
    else:
        logger.warning(accounts.error)

    if data_source_id is None:
        created = await admin.create_data_source(title)
        if not created.success:
            logger.error(f"Could not create data source: {created.error}")
            return 1
        data_source_id = created.id
        logger.info(f"Created data source {data_source_id}")

    existing = await admin.list_datasets(data_source_id)
    existing_titles = {d.get("title"): d.get("id") for d in existing.items if isinstance(d, dict)}

    failed = 0
    for source_name in available_schemas():
        schema = get_schema(source_name)
        if schema.dataset_name in existing_titles:
            dataset_id = existing_titles[schema.dataset_name]
            logger.info(f"Dataset {schema.dataset_name} already exists: {dataset_id}")
        else:
            result = await admin.create_dataset_for(data_source_id, schema)
            if not result.success:
                logger.error(f"Could not create dataset {schema.dataset_name}: {result.error}")
                failed += 1
                continue
            dataset_id = result.id
            logger.info(f"Created dataset {schema.dataset_name}: {dataset_id}")
        print(f"DATABOX_DATASET_ID_{source_name.upper()}={dataset_id}")

    return 1 if failed else 0


if __name__ == "__main__":
    setup_logging(settings)
    args = sys.argv[1:]
    source_id = None
    if "--data-source-id" in args:
        index = args.index("--data-source-id")
        source_id = int(args[index + 1])
        del args[index:index + 2]
    sys.exit(asyncio.run(setup_datasets(args[0] if args else "Activity metrics", source_id)))
