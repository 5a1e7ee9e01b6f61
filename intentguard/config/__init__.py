"""Guardian configuration: pydantic schema and YAML settings loader."""
