from typing import Optional
from fastapi import Query


class ListParams:
    """Common list query parameters: ?page=&limit=&q=&order="""

    def __init__(
        self,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        q: Optional[str] = Query(None, max_length=200),
        order: Optional[str] = Query(None, pattern="^(asc|desc)$"),
    ):
        self.page = page
        self.limit = limit
        self.q = q.strip() if q and q.strip() else None
        self.order = order

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def pattern(self) -> Optional[str]:
        return f"%{self.q}%" if self.q else None

    def sort(self, column, default: str = "desc"):
        direction = self.order or default
        return column.asc() if direction == "asc" else column.desc()
