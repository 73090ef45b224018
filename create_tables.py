import sys

import boto3
from botocore.exceptions import ClientError

from rounds_engine.config import EngineConfig
from rounds_engine.errors import ConfigError
from rounds_engine.tables import all_definitions


def create_tables(client, config: EngineConfig, wait: bool = True):
    """Create every table the engine uses.  Tables that already exist are left alone."""
    created, existing = [], []
    for definition in all_definitions(config.tables):
        name = definition["TableName"]
        try:
            client.create_table(**definition)
            created.append(name)
            print(f"created {name}")
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "ResourceInUseException":
                raise
            existing.append(name)
            print(f"exists  {name}")

    if wait:
        waiter = client.get_waiter("table_exists")
        for name in created:
            waiter.wait(TableName=name)
    return created, existing


if __name__ == "__main__":
    try:
        cfg = EngineConfig.from_env()
    except ConfigError as e:
        print(f"config error: {e}", file=sys.stderr)
        sys.exit(1)

    ddb = boto3.client("dynamodb", region_name=cfg.region)
    made, _ = create_tables(ddb, cfg)
    print(f"\n{len(made)} table(s) created in {cfg.region}")
