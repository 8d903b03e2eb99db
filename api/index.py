"""
Serverless entry point for the Case Escalation API.

The platform scheduler (or an admin) calls POST /sla/process; there is no
in-process scheduler here.
"""
import os

# Set environment variables for serverless
os.environ.setdefault("ENVIRONMENT", "production")
os.environ.setdefault("SLA_EVALUATION_INTERVAL", "0")

from mangum import Mangum

from escalation_service.infrastructure.database import init_database
from escalation_service.main import app
from escalation_service.shared.infrastructure.logging import setup_logging

# Lifespan is off, so set up what the request handlers need here
setup_logging(os.environ.get("LOG_LEVEL", "INFO"), os.environ["ENVIRONMENT"])
init_database()

handler = Mangum(app, lifespan="off")
