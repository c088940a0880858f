from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Serverless deployments mount the app under /api unless configured otherwise.
os.environ.setdefault("CREDITS_ROOT_PATH", "/api")

from credit_ledger.api import app

handler = Mangum(app)
