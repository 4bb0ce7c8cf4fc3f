"""Shared fixtures: AL workspaces and memory-backed engines."""

from pathlib import Path

import pytest

from workflow_engine.config import EngineConfig, StorageConfig
from workflow_engine.tools import WorkflowEngine


CUSTOMER_TABLE = """table 50100 "Customer Ext"
{
    fields
    {
        field(1; "No."; Code[20]) { }
    }
}
"""

CUSTOMER_PAGE = """page 50101 "Customer Ext Card"
{
    SourceTable = "Customer Ext";
}
"""

SALES_CODEUNIT = """codeunit 50102 "Sales Post Ext"
{
    procedure Post()
    begin
        Message('Posting');
    end;
}
"""

# 2 literal calls and 1 text constant call
ERRORS_CODEUNIT = """codeunit 50110 "Order Checks"
{
    procedure CheckCustomer()
    begin
        Error('Customer is blocked');
        Error('Amount must be positive');
        Error(CustomerBlockedErr);
    end;
}
"""

# 1 literal call and 1 text constant call
MORE_ERRORS_CODEUNIT = """codeunit 50111 "Posting Checks"
{
    procedure CheckPosting()
    begin
        Error('Missing posting date');
        Error(AmountTooLargeErr);
    end;
}
"""


def write_files(root: Path, files: dict) -> Path:
    for rel_path, content in files.items():
        path = root / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def al_workspace(tmp_path):
    """Three AL files, no Error() calls."""
    return write_files(tmp_path / "app", {
        "src/Customer.Table.al": CUSTOMER_TABLE,
        "src/CustomerCard.Page.al": CUSTOMER_PAGE,
        "src/SalesPost.Codeunit.al": SALES_CODEUNIT,
    })


@pytest.fixture
def error_workspace(tmp_path):
    """Two AL files with 3 literal and 2 text_constant Error() calls."""
    return write_files(tmp_path / "app", {
        "src/OrderChecks.Codeunit.al": ERRORS_CODEUNIT,
        "src/PostingChecks.Codeunit.al": MORE_ERRORS_CODEUNIT,
    })


@pytest.fixture
def engine(tmp_path):
    """Engine with in-memory session storage."""
    config = EngineConfig(storage=StorageConfig(backend="memory"))
    return WorkflowEngine(config, base_dir=tmp_path)


@pytest.fixture
def file_engine(tmp_path):
    """Engine persisting sessions under tmp_path/.bc-workflows."""
    return WorkflowEngine(EngineConfig(), base_dir=tmp_path)
