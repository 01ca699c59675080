import logging
from decimal import Decimal
from sqlalchemy import inspect, select, text
from convenio.core import config
from convenio.core.security import get_password_hash
from convenio.core.database import engine, AsyncSessionLocal, Base
from convenio.models.models import Service, ServiceCategory, User
from convenio.services.identity import role_filter

logger = logging.getLogger(__name__)

# Columns added after the first release
ALTERATIONS = [
    ("users", "photo_url", "VARCHAR"),
    ("users", "crm", "VARCHAR"),
    ("users", "referred_by_affiliate_id", "INTEGER"),
    ("users", "affiliate_referral_id", "INTEGER"),
    ("users", "signature_url", "VARCHAR"),
    ("users", "commission_amount", "NUMERIC(10, 2)"),
    ("users", "pix_key", "VARCHAR"),
    ("dependents", "payment_reference", "VARCHAR"),
    ("dependents", "activated_at", "TIMESTAMP"),
    ("dependents", "billing_amount", "NUMERIC(10, 2) DEFAULT 50"),
    ("consultations", "location_id", "INTEGER"),
    ("consultations", "cancelled_at", "TIMESTAMP"),
    ("consultations", "cancelled_by", "INTEGER"),
    ("consultations", "cancellation_reason", "TEXT"),
    ("medical_documents", "template_data", "JSON"),
    ("client_payments", "coupon_id", "INTEGER"),
    ("dependent_payments", "coupon_id", "INTEGER"),
]

INDEXES = [
    ("idx_dependents_client", "dependents", "(client_id)"),
    ("idx_users_national_id", "users", "(national_id)"),
    ("idx_consultations_professional_date", "consultations", "(professional_id, date)"),
    ("idx_appointments_professional_date", "appointments", "(professional_id, date)"),
    ("idx_affiliate_referrals_affiliate_created", "affiliate_referrals", "(affiliate_id, created_at)"),
]

POSTGRES_INDEXES = [
    ("idx_users_roles", "CREATE INDEX IF NOT EXISTS idx_users_roles ON users USING GIN (roles);"),
]

PAYMENT_TABLES = ("client_payments", "dependent_payments", "professional_payments", "agenda_payments")

# (label, statements run before the constraint so that it can be created)
DEDUPLICATION = [
    ("users.national_id", [
        "DELETE FROM users WHERE id NOT IN (SELECT MIN(id) FROM users GROUP BY national_id);",
    ]),
    ("dependents.national_id", [
        "DELETE FROM dependents WHERE id NOT IN (SELECT MIN(id) FROM dependents GROUP BY national_id);",
    ]),
    ("private_patients.national_id", [
        "DELETE FROM private_patients WHERE national_id IS NOT NULL AND id NOT IN "
        "(SELECT MIN(id) FROM private_patients WHERE national_id IS NOT NULL GROUP BY national_id, professional_id);",
    ]),
    ("service_categories.name", [
        # Point references at the surviving category first
        "UPDATE services SET category_id = (SELECT MIN(c2.id) FROM service_categories c2 WHERE c2.name = "
        "(SELECT c1.name FROM service_categories c1 WHERE c1.id = services.category_id)) WHERE category_id IS NOT NULL;",
        "UPDATE users SET category_id = (SELECT MIN(c2.id) FROM service_categories c2 WHERE c2.name = "
        "(SELECT c1.name FROM service_categories c1 WHERE c1.id = users.category_id)) WHERE category_id IS NOT NULL;",
        "DELETE FROM service_categories WHERE id NOT IN (SELECT MIN(id) FROM service_categories GROUP BY name);",
    ]),
    ("appointments slot", [
        "DELETE FROM appointments WHERE status <> 'cancelled' AND id NOT IN "
        "(SELECT MIN(id) FROM appointments WHERE status <> 'cancelled' GROUP BY professional_id, date, time);",
    ]),
    ("affiliate_commissions.referral_id", [
        "DELETE FROM affiliate_commissions WHERE id NOT IN (SELECT MIN(id) FROM affiliate_commissions GROUP BY referral_id);",
    ]),
    ("coupons.code", [
        "UPDATE coupon_usages SET coupon_id = (SELECT MIN(c2.id) FROM coupons c2 WHERE c2.code = "
        "(SELECT c1.code FROM coupons c1 WHERE c1.id = coupon_usages.coupon_id));",
        "DELETE FROM coupons WHERE id NOT IN (SELECT MIN(id) FROM coupons GROUP BY code);",
    ]),
] + [
    (f"{table}.gateway_payment_id", [
        f"DELETE FROM {table} WHERE gateway_payment_id IS NOT NULL AND id NOT IN "
        f"(SELECT MIN(id) FROM {table} WHERE gateway_payment_id IS NOT NULL GROUP BY gateway_payment_id);",
    ])
    for table in PAYMENT_TABLES
]

UNIQUE_INDEXES = [
    ("uq_users_national_id", "users", "(national_id)", None),
    ("uq_dependents_national_id", "dependents", "(national_id)", None),
    ("uq_private_patients_national_id", "private_patients", "(national_id, professional_id)", "national_id IS NOT NULL"),
    ("uq_service_categories_name", "service_categories", "(name)", None),
    ("uq_appointments_slot", "appointments", "(professional_id, date, time)", "status <> 'cancelled'"),
    ("uq_affiliate_commissions_referral", "affiliate_commissions", "(referral_id)", None),
    ("uq_coupons_code", "coupons", "(code)", None),
] + [
    (f"uq_{table}_gateway_payment_id", table, "(gateway_payment_id)", "gateway_payment_id IS NOT NULL")
    for table in PAYMENT_TABLES
]

DEFAULT_CATEGORIES = [
    ("Fisioterapia", "Serviços de fisioterapia e reabilitação"),
    ("Psicologia", "Atendimento psicológico"),
    ("Nutrição", "Consultas nutricionais"),
]

DEFAULT_SERVICES = [
    ("Consulta Fisioterapêutica", "Fisioterapia", Decimal("80.00"), True),
    ("Consulta Psicológica", "Psicologia", Decimal("120.00"), True),
    ("Consulta Nutricional", "Nutrição", Decimal("100.00"), True),
]


def _columns(sync_conn, table):
    return {c["name"] for c in inspect(sync_conn).get_columns(table)}


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    is_postgres = engine.dialect.name == "postgresql"

    async with AsyncSessionLocal() as session:
        # 1. Columns
        for table, col, col_type in ALTERATIONS:
            try:
                conn = await session.connection()
                existing = await conn.run_sync(_columns, table)
                if col not in existing:
                    logger.info("Adding column %s to %s", col, table)
                    await session.execute(text(f"ALTER TABLE {table} ADD COLUMN {col} {col_type};"))
                    await session.commit()
            except Exception as e:
                logger.warning("Skipping alteration for %s.%s: %s", table, col, e)
                await session.rollback()

        # 2. Plain indexes
        statements = [(name, f"CREATE INDEX IF NOT EXISTS {name} ON {table} {columns};") for name, table, columns in INDEXES]
        if is_postgres:
            statements += POSTGRES_INDEXES
        for idx_name, sql in statements:
            try:
                await session.execute(text(sql))
                await session.commit()
            except Exception as e:
                logger.warning("Skipping index %s: %s", idx_name, e)
                await session.rollback()

        # 3. Duplicates that would block the unique indexes, lowest id wins
        for label, cleanup in DEDUPLICATION:
            try:
                removed = 0
                for sql in cleanup:
                    res = await session.execute(text(sql))
                    if sql.startswith("DELETE"):
                        removed += res.rowcount or 0
                await session.commit()
                if removed:
                    logger.warning("Removed %s duplicate rows for %s", removed, label)
            except Exception as e:
                logger.warning("Skipping deduplication of %s: %s", label, e)
                await session.rollback()

        # 4. Unique indexes
        for idx_name, table, columns, where in UNIQUE_INDEXES:
            sql = f"CREATE UNIQUE INDEX IF NOT EXISTS {idx_name} ON {table} {columns}"
            if where:
                sql += f" WHERE {where}"
            try:
                await session.execute(text(sql + ";"))
                await session.commit()
            except Exception as e:
                logger.warning("Skipping unique index %s: %s", idx_name, e)
                await session.rollback()

    # Seed (only what is missing)
    async with AsyncSessionLocal() as session:
        categories = {c.name: c for c in (await session.execute(select(ServiceCategory))).scalars().all()}
        for name, description in DEFAULT_CATEGORIES:
            if name not in categories:
                logger.info("Seeding category %s", name)
                categories[name] = ServiceCategory(name=name, description=description)
                session.add(categories[name])
        await session.flush()

        existing_services = set((await session.execute(select(Service.name))).scalars().all())
        for name, category_name, price, is_base in DEFAULT_SERVICES:
            if name not in existing_services:
                logger.info("Seeding service %s", name)
                session.add(Service(
                    name=name,
                    base_price=price,
                    category_id=categories[category_name].id,
                    is_base_service=is_base,
                ))
        await session.commit()

    async with AsyncSessionLocal() as session:
        if (await session.execute(select(User.id).where(role_filter("admin")).limit(1))).first():
            return
        if (await session.execute(select(User.id).where(User.national_id == config.ADMIN_CPF))).first():
            logger.warning("Default admin CPF %s belongs to a non-admin user, not seeding", config.ADMIN_CPF)
            return
        logger.info("Seeding default admin")
        session.add(User(
            name=config.ADMIN_NAME,
            national_id=config.ADMIN_CPF,
            password_hash=get_password_hash(config.ADMIN_PASSWORD),
            roles=["admin"],
            subscription_status="pending",
        ))
        await session.commit()
