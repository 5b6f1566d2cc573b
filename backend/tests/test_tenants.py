"""
Tenant resolution and the tier column's alias normalization.
"""
from sqlalchemy import text

from models import Tenant
from tenants import resolve_tenant
from tier_policy import SubscriptionTier


async def test_business_rows_load_as_elite(db):
    await db.execute(text(
        "INSERT INTO tenants (slug, name, tier, is_demo, business_type, timezone) "
        "VALUES ('legacy-spa', 'Legacy Spa', 'business', 0, 'service', 'UTC')"
    ))
    await db.commit()

    tenant = await resolve_tenant(db, "legacy-spa")
    assert tenant.tier is SubscriptionTier.ELITE


async def test_tier_is_stored_normalized(db):
    db.add(Tenant(slug="new-spa", name="New Spa", tier="Business", is_demo=True))
    await db.commit()

    stored = (await db.execute(text("SELECT tier FROM tenants WHERE slug = 'new-spa'"))).scalar_one()
    assert stored == "elite"


async def test_resolve_ignores_case_and_whitespace(db, pro_tenant):
    assert (await resolve_tenant(db, "  River-Music ")).id == pro_tenant.id
    assert await resolve_tenant(db, "missing") is None


async def test_public_config(client, pro_tenant):
    response = await client.get(f"/api/tenants/{pro_tenant.slug}")

    assert response.status_code == 200
    data = response.json()
    assert data["tier"] == "pro"
    assert data["tier_display_name"] == "Vantak Pro"
    assert data["payments_enabled"] is True
    assert data["capabilities"]["recurring_bookings"] is True
    assert data["capabilities"]["financing"] is False
    assert data["terminology"]["customer"] == "Student"


async def test_capabilities_endpoint(client, elite_tenant):
    response = await client.get(f"/api/tenants/{elite_tenant.slug}/capabilities")
    assert response.status_code == 200
    assert response.json()["ledger"] is True
    assert response.json()["platform_fee_percent"] == 0.4


async def test_unknown_slug_is_404(client):
    response = await client.get("/api/tenants/nobody-here")
    assert response.status_code == 404
