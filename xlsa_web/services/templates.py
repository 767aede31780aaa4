from __future__ import annotations

from types import MappingProxyType

from xlsa_web.domain.models import SheetDesign, WorkbookDesign
from xlsa_web.domain.outcome import AppError, Err, Ok, Outcome

BUILTIN_TEMPLATES = MappingProxyType({
    "budget": {
        "title": "Budget",
        "sheets": [
            {"name": "Budget", "headers": ["Category", "Item", "Planned", "Actual", "Difference"]},
        ],
    },
    "expense_tracker": {
        "title": "Expense Tracker",
        "sheets": [
            {"name": "Expenses", "headers": ["Date", "Category", "Description", "Amount", "Payment Method"]},
        ],
    },
    "inventory": {
        "title": "Inventory",
        "sheets": [
            {"name": "Items", "headers": ["SKU", "Name", "Quantity", "Unit Cost", "Reorder Level"]},
            {"name": "Suppliers", "headers": ["Supplier", "Contact", "Lead Time (days)"]},
        ],
    },
    "sales_report": {
        "title": "Sales Report",
        "sheets": [
            {"name": "Sales", "headers": ["Date", "Region", "Product", "Units", "Revenue"]},
        ],
    },
})


class TemplateCatalog:
    """Built-in template layouts filled with caller-supplied rows."""

    def __init__(self, templates=BUILTIN_TEMPLATES):
        self._templates = templates

    def names(self) -> list[str]:
        return sorted(self._templates)

    def render(self, payload: dict) -> Outcome[WorkbookDesign]:
        name = (payload.get("template_name") or "").strip()
        template = self._templates.get(name)
        if template is None:
            return Err(AppError.invalid_input(f"Template not found: {name}", available=self.names()))

        data = payload.get("data") or {}
        if not isinstance(data, dict):
            return Err(AppError.invalid_input("Template data must map sheet names to rows"))

        sheets = []
        for sheet in template["sheets"]:
            rows = data.get(sheet["name"], [])
            if not isinstance(rows, list):
                return Err(AppError.invalid_input(f"Rows for sheet {sheet['name']} must be a list"))
            width = len(sheet["headers"])
            for i, row in enumerate(rows, start=1):
                if not isinstance(row, (list, tuple)) or len(row) > width:
                    return Err(AppError.invalid_input(
                        f"Row {i} of sheet {sheet['name']} must be a list of at most {width} values"
                    ))
            sheets.append(SheetDesign(name=sheet["name"], headers=list(sheet["headers"]), rows=[list(r) for r in rows]))

        title = (payload.get("customizations") or {}).get("title") or template["title"]
        return Ok(WorkbookDesign(title=str(title), sheets=sheets))
