"""Seed a demo tenant, an admin user and two templates for local development.

Usage:
    python -m scripts.seed_demo [--reset]
"""

import argparse
import asyncio
import logging

from sqlalchemy import delete, select

from app.database import async_session_maker, engine
from app.models import AuditLog, Document, Template, Tenant, User
from app.models.template import VariableType
from app.models.user import UserRole

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
logger = logging.getLogger("seed_demo")

DEMO_PORTAL_ID = "12345678"

CONTRACT_HTML = """
<h1>CONTRATO DE SERVICIOS</h1>
<p><strong>Fecha:</strong> {{current_date}}</p>

<h2>DATOS DEL CLIENTE</h2>
<p><strong>Nombre:</strong> {{contact.firstname}} {{contact.lastname}}</p>
<p><strong>Email:</strong> {{contact.email}}</p>
<p><strong>Teléfono:</strong> {{contact.phone}}</p>
<p><strong>Empresa:</strong> {{company.name}}</p>

<h2>DATOS DEL PROYECTO</h2>
<p><strong>Nombre del Proyecto:</strong> {{deal.dealname}}</p>
<p><strong>Valor del Contrato:</strong> ${{deal.amount}} {{deal.deal_currency_code}}</p>
<p><strong>Fecha de Inicio:</strong> {{deal.closedate}}</p>

<h2>TÉRMINOS Y CONDICIONES</h2>
<p>Este contrato establece los términos y condiciones para la prestación de servicios.</p>

<div style="margin-top: 50px;">
  <p>_______________________</p>
  <p>Firma del Cliente</p>
</div>
"""

PROPOSAL_HTML = """
<div style="text-align: center; margin-bottom: 30px;">
  <h1>PROPUESTA COMERCIAL</h1>
  <p style="color: #666;">Propuesta para {{company.name}}</p>
</div>

<h2>Estimado(a) {{contact.firstname}},</h2>
<p>Gracias por su interés en nuestros servicios. A continuación presentamos nuestra propuesta:</p>

<h3>RESUMEN DEL PROYECTO</h3>
<p><strong>Proyecto:</strong> {{deal.dealname}}</p>
<p><strong>Descripción:</strong> {{deal.description}}</p>

<h3>INVERSIÓN</h3>
<p><strong>Valor Total:</strong> ${{deal.amount}} {{deal.deal_currency_code}}</p>
<p><strong>Fecha estimada de inicio:</strong> {{deal.closedate}}</p>

<p style="margin-top: 40px;">Esperamos poder trabajar juntos.</p>
<p><strong>Atentamente,</strong><br>El equipo de ventas</p>
"""


def _var(name: str, label: str, type_: VariableType, required: bool = False, default: str | None = None) -> dict:
    return {
        "name": name,
        "label": label,
        "type": type_.value,
        "required": required,
        "default_value": default,
    }


CONTRACT_VARIABLES = [
    _var("contact.firstname", "Nombre del contacto", VariableType.CONTACT, required=True),
    _var("contact.lastname", "Apellido del contacto", VariableType.CONTACT, required=True),
    _var("contact.email", "Email del contacto", VariableType.CONTACT, required=True),
    _var("contact.phone", "Teléfono del contacto", VariableType.CONTACT),
    _var("company.name", "Nombre de la empresa", VariableType.COMPANY, required=True),
    _var("deal.dealname", "Nombre del deal", VariableType.DEAL, required=True),
    _var("deal.amount", "Valor del deal", VariableType.DEAL, required=True),
    _var("deal.deal_currency_code", "Moneda del deal", VariableType.DEAL, default="MXN"),
    _var("deal.closedate", "Fecha de cierre", VariableType.DEAL),
]

PROPOSAL_VARIABLES = [
    _var("contact.firstname", "Nombre del contacto", VariableType.CONTACT, required=True),
    _var("company.name", "Nombre de la empresa", VariableType.COMPANY, required=True),
    _var("deal.dealname", "Nombre del deal", VariableType.DEAL, required=True),
    _var("deal.description", "Descripción del deal", VariableType.DEAL),
    _var("deal.amount", "Valor del deal", VariableType.DEAL, required=True),
    _var("deal.deal_currency_code", "Moneda del deal", VariableType.DEAL, default="MXN"),
    _var("deal.closedate", "Fecha de cierre", VariableType.DEAL),
]


async def reset(session) -> None:
    """Remove the demo tenant and everything it owns."""
    tenant = await session.scalar(select(Tenant).where(Tenant.hubspot_portal_id == DEMO_PORTAL_ID))
    if tenant is None:
        return
    # Documents restrict template deletion, so they go first
    for model in (AuditLog, Document, Template, User):
        await session.execute(delete(model).where(model.tenant_id == tenant.id))
    await session.delete(tenant)
    await session.flush()
    logger.info("Removed existing demo tenant")


async def seed(reset_first: bool = False) -> None:
    async with async_session_maker() as session:
        if reset_first:
            await reset(session)

        existing = await session.scalar(select(Tenant).where(Tenant.hubspot_portal_id == DEMO_PORTAL_ID))
        if existing is not None:
            logger.info("Demo tenant already present (%s), nothing to do", existing.id)
            return

        tenant = Tenant(
            name="Demo Company",
            hubspot_portal_id=DEMO_PORTAL_ID,
            is_active=True,
            settings={"timezone": "America/Mexico_City", "locale": "es-MX"},
        )
        session.add(tenant)
        await session.flush()

        admin = User(
            tenant_id=tenant.id,
            email="admin@democompany.com",
            name="Admin Demo",
            role=UserRole.ADMIN,
        )
        session.add(admin)
        await session.flush()

        session.add_all([
            Template(
                tenant_id=tenant.id,
                created_by_id=admin.id,
                name="Contrato de Servicios",
                description="Contrato de servicios con clientes",
                content=CONTRACT_HTML,
                variables=CONTRACT_VARIABLES,
            ),
            Template(
                tenant_id=tenant.id,
                created_by_id=admin.id,
                name="Propuesta Comercial",
                description="Propuesta comercial para prospectos",
                content=PROPOSAL_HTML,
                variables=PROPOSAL_VARIABLES,
            ),
        ])
        await session.commit()
        logger.info("Seeded tenant %s with admin %s and 2 templates", tenant.id, admin.email)


async def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--reset", action="store_true", help="delete the demo tenant first")
    args = parser.parse_args()
    try:
        await seed(reset_first=args.reset)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
