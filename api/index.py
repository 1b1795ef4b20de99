"""
Vercel entry point for the Ticket Escalation API
"""
import os

# Serverless functions don't keep a scheduler alive; sweeps are triggered
# through POST /api/escalation-rules/run instead.
os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("ESCALATION_SWEEP_ENABLED", "false")

from mangum import Mangum

from crm_tickets.infrastructure.database import init_database
from crm_tickets.main import app

# Lifespan is off, so the engine is created here; schema and seed data
# are expected to be in place already.
init_database()

handler = Mangum(app, lifespan="off")
