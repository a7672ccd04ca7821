"""Tally 用の DynamoDB テーブルを作成する（pk=EVENT#<id>, sk=META/JUDGE#/RAW#/SNAP#/OVERALL）。"""

from __future__ import annotations

import argparse
import logging
import os

import boto3

logger = logging.getLogger("create_dynamodb_table")


def _table_name(cli_value: str | None) -> str:
    v = (cli_value or os.environ.get("DDB_TABLE_NAME", "")).strip()
    if not v:
        raise SystemExit("DDB_TABLE_NAME (or --table) is required")
    return v


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--table", help="table name (defaults to $DDB_TABLE_NAME)")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")

    table_name = _table_name(args.table)
    ddb = boto3.client("dynamodb")
    existing = ddb.list_tables().get("TableNames", [])
    if table_name in existing:
        logger.info("table already exists: %s", table_name)
        return

    # 1イベント = 1パーティション。集計スナップショットは sk 単位で丸ごと置き換える。
    ddb.create_table(
        TableName=table_name,
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    ddb.get_waiter("table_exists").wait(TableName=table_name)
    logger.info("created table: %s", table_name)


if __name__ == "__main__":
    main()
