# Infrastructure clients
from clients.vault_client import (
    VaultClient,
    VaultError,
    get_database_url,
    get_valkey_url,
    get_email_config,
    get_two_factor_key,
)
from clients.postgres_client import PostgresClient, Transaction
from clients.valkey_client import ValkeyClient
from clients.email_client import EmailGatewayClient, EmailGatewayError
