import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")


def test_package_imports():
    import spotter.context  # noqa: F401
    import spotter.models  # noqa: F401
    import spotter.services.coaching  # noqa: F401
    import app.main  # noqa: F401


def test_tool_schemas_match_engine():
    from spotter.services.security_monitor import SecurityMonitor
    from spotter.services.tool_engine import TOOL_SCHEMAS, ToolEngine

    names = [schema["function"]["name"] for schema in TOOL_SCHEMAS]
    assert names == list(ToolEngine(SecurityMonitor()).tool_names)
