import sys
import os
import pytest
from pathlib import Path

# Add the src directory to Python path for imports
root_dir = Path(__file__).parent
src_dir = root_dir / "src"
sys.path.insert(0, str(src_dir))
sys.path.insert(0, str(root_dir))

# Table names are read lazily; give every test a consistent set
os.environ.setdefault("TRANSACTIONS_TABLE", "subtrack-test-transactions")
os.environ.setdefault("SUBSCRIPTIONS_TABLE", "subtrack-test-subscriptions")
os.environ.setdefault("MERCHANT_ALIASES_TABLE", "subtrack-test-merchant-aliases")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-2")


def pytest_configure(config):
    """
    Register markers used across the suite
    """
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )

# Configure test paths
pytest_plugins = []
