from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from itc_recon.database import get_db


DB = Annotated[AsyncSession, Depends(get_db)]


@dataclass
class PageParams:
    page: int
    size: int

    def pages(self, total: int) -> int:
        return (total + self.size - 1) // self.size if self.size > 0 else 1


def get_page_params(
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(50, ge=1, le=200, description="Page size"),
) -> PageParams:
    return PageParams(page=page, size=size)


Pagination = Annotated[PageParams, Depends(get_page_params)]
