import csv
import io
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from lending.config import settings
from lending.errors import LendingError
from lending.library import Library
from lending.utils.dates import utcnow

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

library = Library(os.environ.get("LENDING_DB_FILE") or None)

app = FastAPI(title=settings.app_name, version=settings.app_version)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_KIND = {
    "not_found": 404,
    "conflict": 409,
    "invalid_argument": 422,
    "store_error": 503,
}


def _http_error(e: LendingError) -> HTTPException:
    status = STATUS_BY_KIND.get(e.kind, 500)
    if status >= 500:
        logger.error(f"Request failed: {e.message}")
    return HTTPException(status_code=status, detail=e.message)


# --- Models ---
class BookModel(BaseModel):
    id: str
    title: str
    author: str
    isbn: str | None = None
    publisher: str | None = None
    year: int | None = None
    category: str | None = None
    location: str | None = None
    is_available: bool
    created_at: str | None = None
    updated_at: str | None = None


class BookCreateModel(BaseModel):
    title: str
    author: str
    isbn: str | None = Field(default=None, description="ISBN-10 or ISBN-13, hyphens allowed")
    publisher: str | None = None
    year: int | None = None
    category: str | None = None
    location: str | None = Field(default=None, description="Shelf location")


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    isbn: str | None = None
    publisher: str | None = None
    year: int | None = None
    category: str | None = None
    location: str | None = None


class PopularBookModel(BaseModel):
    id: str
    title: str
    author: str
    loan_count: int


class UserModel(BaseModel):
    id: str
    name: str
    email: str
    type: str
    phone: str | None = None
    department: str | None = None
    is_active: bool
    created_at: str | None = None
    updated_at: str | None = None


class UserCreateModel(BaseModel):
    name: str
    email: str
    type: str = "student"
    phone: str | None = None
    department: str | None = None
    password: str | None = None
    is_active: bool = True


class UserUpdateModel(BaseModel):
    name: str | None = None
    email: str | None = None
    type: str | None = None
    phone: str | None = None
    department: str | None = None
    password: str | None = None
    is_active: bool | None = None


class PaginatedUsers(BaseModel):
    users: List[UserModel]
    total: int
    page: int
    limit: int
    total_pages: int


class TypeCount(BaseModel):
    type: str
    count: int


class UserOverviewModel(BaseModel):
    total_users: int
    active_users: int
    inactive_users: int
    users_with_active_loans: int
    type_stats: List[TypeCount]


class BookSummary(BaseModel):
    id: str
    title: str
    author: str
    isbn: str | None = None


class UserSummary(BaseModel):
    id: str
    name: str
    email: str
    type: str


class LoanModel(BaseModel):
    id: str
    book_id: str
    user_id: str
    loan_date: str
    due_date: str
    return_date: str | None = None
    returned: bool
    status: str
    is_overdue: bool
    notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    book: BookSummary | None = None
    user: UserSummary | None = None


class LoanCreateModel(BaseModel):
    book_id: str
    user_id: str
    due_date: datetime | None = None
    loan_date: datetime | None = None
    notes: str | None = None


class LoanUpdateModel(BaseModel):
    book_id: str | None = None
    user_id: str | None = None
    due_date: datetime | None = None
    loan_date: datetime | None = None
    notes: str | None = None


class LoanReturnModel(BaseModel):
    notes: str | None = None


class ReconcileModel(BaseModel):
    marked_unavailable: List[str]
    released: List[str]
    changed: int


def _loan_payload(loan, now: Optional[datetime] = None) -> LoanModel:
    return LoanModel(**library.loan_details(loan, now))


def _add_link_headers(response: Response, path: str, offset: int, limit: int, total: int,
                      params: Dict[str, Any]) -> None:
    """Add RFC 5988 ``Link`` headers for offset/limit pagination."""
    links = []
    base_url = f"http://{settings.api_host}:{settings.api_port}{path}"
    extra = [f"{k}={v}" for k, v in params.items() if v is not None]
    if offset > 0:
        query = [f"offset={max(0, offset - limit)}", f"limit={limit}"] + extra
        links.append(f'<{base_url}?{"&".join(query)}>; rel="prev"')
    if offset + limit < total:
        query = [f"offset={offset + limit}", f"limit={limit}"] + extra
        links.append(f'<{base_url}?{"&".join(query)}>; rel="next"')
    response.headers["Link"] = ", ".join(links)
    response.headers["X-Total-Count"] = str(total)


# --- Health ---
@app.get("/health")
def health_check():
    """Liveness plus a quick store round trip."""
    try:
        counts = library.store.book_counts()
    except LendingError as e:
        raise _http_error(e)
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "total_books": counts["total"],
        "environment": settings.environment,
    }


# --- Books ---
@app.get("/books", response_model=List[BookModel])
def get_books(
    response: Response,
    q: Optional[str] = Query(None, description="Search title, author, category or ISBN"),
    category: Optional[str] = Query(None),
    available: Optional[bool] = Query(None),
    sort_by: str = Query("title", description="title|author|year|created_at"),
    order: str = Query("asc", description="asc|desc"),
    limit: int = Query(settings.max_page_size, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    """List books with filtering, sorting, limit and offset."""
    if order not in ("asc", "desc"):
        raise HTTPException(status_code=422, detail="Invalid order. Allowed: asc, desc")
    try:
        books = library.list_books(q=q, category=category, available=available, sort_by=sort_by, order=order)
    except LendingError as e:
        raise _http_error(e)
    _add_link_headers(response, "/books", offset, limit, len(books),
                      {"q": q, "category": category, "sort_by": sort_by, "order": order})
    return [BookModel(**b.to_dict()) for b in books[offset:offset + limit]]


@app.get("/books/popular", response_model=List[PopularBookModel])
def get_popular_books(limit: int = Query(settings.popular_books_limit, ge=1, le=100)):
    """Most lent books, by number of loans."""
    try:
        return [PopularBookModel(**row) for row in library.popular_books(limit)]
    except LendingError as e:
        raise _http_error(e)


@app.get("/books/{book_id}", response_model=BookModel)
def get_book(book_id: str):
    try:
        return BookModel(**library.get_book(book_id).to_dict())
    except LendingError as e:
        raise _http_error(e)


@app.post("/books", response_model=BookModel, status_code=201)
def add_book(payload: BookCreateModel):
    try:
        book = library.add_book(**payload.model_dump())
    except LendingError as e:
        raise _http_error(e)
    return BookModel(**book.to_dict())


@app.put("/books/{book_id}", response_model=BookModel)
def update_book(book_id: str, update: BookUpdateModel):
    try:
        book = library.update_book(book_id, **update.model_dump(exclude_unset=True))
    except LendingError as e:
        raise _http_error(e)
    return BookModel(**book.to_dict())


@app.delete("/books/{book_id}")
def delete_book(book_id: str):
    try:
        library.delete_book(book_id)
    except LendingError as e:
        raise _http_error(e)
    return {"message": "Book deleted successfully"}


# --- Users ---
@app.get("/users", response_model=PaginatedUsers)
def get_users(
    search: Optional[str] = Query(None, description="Search name, email or department"),
    type: Optional[str] = Query(None, description="student|teacher|staff"),
    active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.default_page_size, ge=1, le=settings.max_page_size),
    sort_by: str = Query("created_at", description="created_at|name|email|type"),
    sort_order: str = Query("desc", description="asc|desc"),
):
    try:
        result = library.list_users(search=search, type=type, active=active, page=page,
                                    limit=limit, sort_by=sort_by, sort_order=sort_order)
    except LendingError as e:
        raise _http_error(e)
    result["users"] = [UserModel(**u.to_dict()) for u in result["users"]]
    return PaginatedUsers(**result)


@app.get("/users/stats/overview", response_model=UserOverviewModel)
def get_user_overview():
    try:
        return UserOverviewModel(**library.user_overview())
    except LendingError as e:
        raise _http_error(e)


@app.get("/users/{user_id}", response_model=UserModel)
def get_user(user_id: str):
    try:
        return UserModel(**library.get_user(user_id).to_dict())
    except LendingError as e:
        raise _http_error(e)


@app.get("/users/{user_id}/loans", response_model=List[LoanModel])
def get_user_loans(user_id: str, status: Optional[str] = Query(None, description="active|returned")):
    now = utcnow()
    try:
        return [_loan_payload(loan, now) for loan in library.user_loans(user_id, status=status)]
    except LendingError as e:
        raise _http_error(e)


@app.post("/users", response_model=UserModel, status_code=201)
def add_user(payload: UserCreateModel):
    try:
        user = library.add_user(**payload.model_dump())
    except LendingError as e:
        raise _http_error(e)
    return UserModel(**user.to_dict())


@app.put("/users/{user_id}", response_model=UserModel)
def update_user(user_id: str, update: UserUpdateModel):
    try:
        user = library.update_user(user_id, **update.model_dump(exclude_unset=True))
    except LendingError as e:
        raise _http_error(e)
    return UserModel(**user.to_dict())


@app.delete("/users/{user_id}")
def delete_user(user_id: str):
    try:
        library.delete_user(user_id)
    except LendingError as e:
        raise _http_error(e)
    return {"message": "User deleted successfully"}


# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
def get_loans(
    status: Optional[str] = Query(None, description="active|returned"),
    user_id: Optional[str] = Query(None),
    book_id: Optional[str] = Query(None),
    overdue: Optional[bool] = Query(None),
):
    now = utcnow()
    try:
        loans = library.list_loans(status=status, user_id=user_id, book_id=book_id, overdue=overdue, now=now)
        return [_loan_payload(loan, now) for loan in loans]
    except LendingError as e:
        raise _http_error(e)


@app.get("/loans/overdue", response_model=List[LoanModel])
def get_overdue_loans():
    """Active loans past their due date, soonest due first."""
    now = utcnow()
    try:
        return [_loan_payload(loan, now) for loan in library.overdue_loans(now)]
    except LendingError as e:
        raise _http_error(e)


@app.get("/loans/{loan_id}", response_model=LoanModel)
def get_loan(loan_id: str):
    try:
        return _loan_payload(library.get_loan(loan_id))
    except LendingError as e:
        raise _http_error(e)


@app.post("/loans", response_model=LoanModel, status_code=201)
def create_loan(payload: LoanCreateModel):
    try:
        loan = library.create_loan(**payload.model_dump())
        return _loan_payload(loan)
    except LendingError as e:
        raise _http_error(e)


@app.put("/loans/{loan_id}/return", response_model=LoanModel)
def return_loan(loan_id: str, payload: Optional[LoanReturnModel] = None):
    try:
        loan = library.return_loan(loan_id, notes=payload.notes if payload else None)
        return _loan_payload(loan)
    except LendingError as e:
        raise _http_error(e)


@app.put("/loans/{loan_id}", response_model=LoanModel)
def update_loan(loan_id: str, update: LoanUpdateModel):
    try:
        loan = library.update_loan(loan_id, **update.model_dump(exclude_unset=True))
        return _loan_payload(loan)
    except LendingError as e:
        raise _http_error(e)


@app.delete("/loans/{loan_id}")
def delete_loan(loan_id: str):
    try:
        library.delete_loan(loan_id)
    except LendingError as e:
        raise _http_error(e)
    return {"message": "Loan deleted successfully"}


# --- Statistics and maintenance ---
@app.get("/stats")
def get_library_stats():
    """Book, user and loan counts. Overdue is counted against the current time."""
    try:
        return library.get_statistics()
    except LendingError as e:
        raise _http_error(e)


@app.post("/admin/reconcile", response_model=ReconcileModel)
def reconcile():
    """Repair availability flags and refresh the cached overdue flags."""
    try:
        report = library.reconcile()
        library.refresh_overdue()
    except LendingError as e:
        raise _http_error(e)
    return ReconcileModel(**report.to_dict())


@app.get("/export/loans.csv")
def export_loans_csv():
    """All loans as CSV."""
    now = utcnow()
    try:
        loans = library.list_loans(now=now)
    except LendingError as e:
        raise _http_error(e)
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=[
        "id", "book_id", "user_id", "loan_date", "due_date", "return_date", "status", "is_overdue", "notes",
    ])
    writer.writeheader()
    for loan in loans:
        row = loan.to_dict(now)
        writer.writerow({name: row[name] for name in writer.fieldnames})
    return Response(
        content=output.getvalue(),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=loans_export_{now.strftime('%Y%m%d_%H%M%S')}.csv"
        },
    )
