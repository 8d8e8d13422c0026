from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy import create_engine

from alembic import context

from app.core.config import settings
from app.core.base import Base

from app.models.billing_info import BillingInfo  # noqa: F401
from app.models.payment_request import PaymentRequest  # noqa: F401
from app.models.stripe_event import StripeWebhookEvent  # noqa: F401
from app.models.subscription import Subscription  # noqa: F401

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
# This line sets up loggers basically.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Migrations use the DDL-capable role when its credentials are present.
if settings.DB_MIGRATOR_USER and settings.DB_MIGRATOR_PASSWORD:
    migrations_url = settings.migrations_database_url
else:
    migrations_url = settings.database_url

# ConfigParser treats "%" as interpolation markers; escape them for the .ini writer.
config.set_main_option("sqlalchemy.url", migrations_url.replace("%", "%%"))

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    This configures the context with just a URL
    and not an Engine, though an Engine is acceptable
    here as well.  By skipping the Engine creation
    we don't even need a DBAPI to be available.

    Calls to context.execute() here emit the given string to the
    script output.

    """
    context.configure(
        url=migrations_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode.

    In this scenario we need to create an Engine
    and associate a connection with the context.

    """
    connectable = create_engine(
        migrations_url,
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
