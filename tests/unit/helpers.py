"""Shared moto fixtures: tables, secrets and a ready-made Engine."""

import os
from datetime import datetime, timezone

import boto3

from src.tenantgate.core.config import Settings
from src.tenantgate.services import Engine

REGION = "us-east-1"
JWT_KEY = "test-signing-key-0123456789abcdef"
WEBHOOK_SECRET = "whsec_test_0123456789"

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

ENV = {
    "AWS_REGION": REGION,
    "TENANTS_TABLE": "tenantgate-tenants-test",
    "PLANS_TABLE": "tenantgate-plans-test",
    "AUDIT_TABLE": "tenantgate-audit-test",
    "JWT_SECRET_NAME": "/tenantgate/test/jwt",
    "WEBHOOK_SECRET_NAME": "/tenantgate/test/webhook",
    "PAST_DUE_GRACE_DAYS": "7",
    "USAGE_WARNING_THRESHOLDS": "0.8,0.9",
    "LOG_JSON": "false",
}


def make_settings() -> Settings:
    os.environ.update(ENV)
    return Settings.from_env()


def create_tables(settings: Settings) -> None:
    dynamodb = boto3.resource("dynamodb", region_name=settings.region_name)
    for name in (settings.tenants_table, settings.audit_table):
        dynamodb.create_table(
            TableName=name,
            KeySchema=[
                {"AttributeName": "tenant_id", "KeyType": "HASH"},
                {"AttributeName": "sk", "KeyType": "RANGE"}
            ],
            AttributeDefinitions=[
                {"AttributeName": "tenant_id", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"}
            ],
            BillingMode="PAY_PER_REQUEST"
        )
    dynamodb.create_table(
        TableName=settings.plans_table,
        KeySchema=[
            {"AttributeName": "plan_id", "KeyType": "HASH"},
            {"AttributeName": "version", "KeyType": "RANGE"}
        ],
        AttributeDefinitions=[
            {"AttributeName": "plan_id", "AttributeType": "S"},
            {"AttributeName": "version", "AttributeType": "N"}
        ],
        BillingMode="PAY_PER_REQUEST"
    )


def create_secrets(settings: Settings) -> None:
    client = boto3.client("secretsmanager", region_name=settings.region_name)
    client.create_secret(Name=settings.jwt_secret_name, SecretString=JWT_KEY)
    client.create_secret(Name=settings.webhook_secret_name, SecretString=WEBHOOK_SECRET)


def make_engine() -> Engine:
    """Tables, secrets and seeded plans; call inside a moto-mocked test."""
    settings = make_settings()
    create_tables(settings)
    create_secrets(settings)
    engine = Engine(settings)
    engine.plans.seed_defaults()
    return engine
