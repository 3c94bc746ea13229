from typing import Any, Dict

from bulk_data.errors import ResourceValidationError


class ResourceValidator:
    """Checks that every resource of a file has the expected shape and type."""

    def __init__(self, expected_type: str):
        self.expected_type = expected_type
        self.num = 1

    def validate(self, resource: Any) -> Dict[str, Any]:
        if not isinstance(resource, dict) or not resource.get("resourceType"):
            raise ResourceValidationError(
                f"No resourceType found for resource number {self.num}."
            )

        if not resource.get("id"):
            raise ResourceValidationError(
                f'No "id" found for resource number {self.num}.'
            )

        if resource["resourceType"] != self.expected_type:
            raise ResourceValidationError(
                f"Invalid resourceType found for resource number {self.num}. "
                f'Expecting "{self.expected_type}".'
            )

        self.num += 1
        return resource
