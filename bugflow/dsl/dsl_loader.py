import json
import yaml
from pathlib import Path
from typing import Union
from jsonschema import Draft7Validator
from pydantic import ValidationError as PydanticValidationError

from bugflow.dsl.dsl_model import WorkflowSchema

SCHEMA_PATH = Path(__file__).parent / "workflow_schema.json"


class SchemaValidationError(Exception):
    pass


def load_definition_file(file_path: Union[str, Path]) -> dict:
    path = Path(file_path)
    with open(path, 'r', encoding='utf-8') as f:
        if path.suffix in ['.yaml', '.yml']:
            return yaml.safe_load(f)
        elif path.suffix == '.json':
            return json.load(f)
        else:
            raise ValueError(f"Unsupported file type: {path.suffix}")


def validate_with_schema(data: dict, schema_path: Union[str, Path] = SCHEMA_PATH) -> None:
    schema = json.loads(Path(schema_path).read_text(encoding='utf-8'))
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if errors:
        messages = [f"{e.message} at {list(e.path)}" for e in errors]
        raise SchemaValidationError("Schema validation failed:\n" + "\n".join(messages))


def parse_definition(data: dict) -> WorkflowSchema:
    try:
        return WorkflowSchema.model_validate(data)
    except PydanticValidationError as e:
        raise SchemaValidationError(f"Invalid workflow document: {e}") from e


def load_and_validate_definition(
    file_path: Union[str, Path],
    schema_path: Union[str, Path] = SCHEMA_PATH,
) -> WorkflowSchema:
    raw = load_definition_file(file_path)
    validate_with_schema(raw, schema_path)
    return parse_definition(raw)
