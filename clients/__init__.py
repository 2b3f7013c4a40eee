# Infrastructure clients
from clients.vault_client import (
    VaultClient,
    VaultError,
    get_database_url,
    get_email_config,
    get_stripe_config,
    get_paypal_config,
)
from clients.postgres_client import PostgresClient, PostgresTransaction
from clients.email_client import EmailGatewayClient, EmailGatewayError
from clients.payment_gateways import (
    GatewayRegistry,
    PaymentGatewayClient,
    StripeGateway,
    PayPalGateway,
)
