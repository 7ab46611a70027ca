"""BDD tests for chain linkage and verification."""
from __future__ import annotations

from pytest_bdd import scenarios

# Import all step definitions
from steps.common_steps import *
from steps.chain_steps import *

# Load scenarios from feature files
scenarios('chain.feature')
scenarios('unsigned_chain.feature')
