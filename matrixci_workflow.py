# matrixci_workflow.py
# Workflow for testing matrixci itself across the Python versions installed on the host
from __future__ import annotations
from matrixci.dsl import wf, job, sh, uses, matrix, on_push, on_pull_request

def workflow():
    return wf(
        "matrixci",
        # Test job - one instance per interpreter
        job(
            "test",
            uses("actions/checkout@v2"),
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q", timeout_minutes=20),
            name="Test (py${{ matrix.python }})",
            matrix=matrix(python=["3.10", "3.11", "3.12"]),
            timeout_minutes=30,
        ),

        # Lint job - ruff if it is available
        job(
            "lint",
            uses("actions/checkout@v2"),
            sh(
                "Ruff check",
                "ruff check src/ || echo 'ruff not available, skipping'",
            ),
        ),

        # Smoke test - the CLI can plan this very file
        job(
            "plan",
            uses("actions/checkout@v2"),
            sh("Plan", "matrixci plan --pipeline matrixci_workflow.py --event pull_request --sha HEAD"),
        ),
        on=[on_pull_request(), on_push("master")],
    )
