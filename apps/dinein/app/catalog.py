import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import get_session
from .errors import ConflictError, NotFoundError, ValidationError
from .models import TABLE_STATUSES, Branch, DiningTable, Ingredient, MenuCategory, MenuItem

router = APIRouter()


def _get_or_404(s: Session, model, entity_id: str, label: str):
    obj = s.get(model, entity_id)
    if obj is None:
        raise NotFoundError(label, entity_id)
    return obj


def _apply(obj, changes: dict) -> None:
    for key, value in changes.items():
        setattr(obj, key, value)


# --- Branches ---
class BranchCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=1, max_length=64)
    address: Optional[str] = None
    contact: Optional[str] = None


class BranchUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    code: Optional[str] = Field(default=None, min_length=1, max_length=64)
    address: Optional[str] = None
    contact: Optional[str] = None


class BranchOut(BaseModel):
    id: str
    name: str
    code: str
    address: Optional[str]
    contact: Optional[str]
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


def _norm_code(code: str) -> str:
    return code.strip().lower()


def _commit_unique(s: Session, what: str) -> None:
    try:
        s.commit()
    except IntegrityError:
        s.rollback()
        raise ConflictError(f"{what} already exists")


@router.post("/branches", response_model=BranchOut)
def create_branch(req: BranchCreate, s: Session = Depends(get_session)):
    b = Branch(
        id=str(uuid.uuid4()),
        name=req.name.strip(),
        code=_norm_code(req.code),
        address=req.address,
        contact=req.contact,
    )
    s.add(b)
    _commit_unique(s, f"branch code {b.code!r}")
    s.refresh(b)
    return b


@router.get("/branches", response_model=List[BranchOut])
def list_branches(s: Session = Depends(get_session)):
    return s.execute(select(Branch).order_by(Branch.name.asc())).scalars().all()


@router.get("/branches/{branch_id}", response_model=BranchOut)
def get_branch(branch_id: str, s: Session = Depends(get_session)):
    return _get_or_404(s, Branch, branch_id, "branch")


@router.patch("/branches/{branch_id}", response_model=BranchOut)
def update_branch(branch_id: str, req: BranchUpdate, s: Session = Depends(get_session)):
    b = _get_or_404(s, Branch, branch_id, "branch")
    changes = req.model_dump(exclude_unset=True)
    if changes.get("code"):
        changes["code"] = _norm_code(changes["code"])
    _apply(b, changes)
    _commit_unique(s, f"branch code {b.code!r}")
    s.refresh(b)
    return b


@router.delete("/branches/{branch_id}")
def delete_branch(branch_id: str, s: Session = Depends(get_session)):
    s.delete(_get_or_404(s, Branch, branch_id, "branch")); s.commit()
    return {"ok": True}


# --- Tables ---
class TableCreate(BaseModel):
    branch_id: str
    name: str = Field(min_length=1, max_length=50)
    status: str = "available"


class TableUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=50)
    status: Optional[str] = None


class TableOut(BaseModel):
    id: str
    branch_id: str
    name: str
    status: str
    model_config = ConfigDict(from_attributes=True)


def _check_table_status(status: str) -> None:
    if status not in TABLE_STATUSES:
        raise ValidationError(f"table status must be one of {', '.join(TABLE_STATUSES)}")


@router.post("/tables", response_model=TableOut)
def create_table(req: TableCreate, s: Session = Depends(get_session)):
    _check_table_status(req.status)
    _get_or_404(s, Branch, req.branch_id, "branch")
    t = DiningTable(id=str(uuid.uuid4()), branch_id=req.branch_id, name=req.name.strip(), status=req.status)
    s.add(t); s.commit(); s.refresh(t)
    return t


@router.get("/tables", response_model=List[TableOut])
def list_tables(branch_id: Optional[str] = None, status: Optional[str] = None, s: Session = Depends(get_session)):
    stmt = select(DiningTable)
    if branch_id:
        stmt = stmt.where(DiningTable.branch_id == branch_id)
    if status:
        _check_table_status(status)
        stmt = stmt.where(DiningTable.status == status)
    return s.execute(stmt.order_by(DiningTable.name.asc())).scalars().all()


@router.get("/tables/{table_id}", response_model=TableOut)
def get_table(table_id: str, s: Session = Depends(get_session)):
    return _get_or_404(s, DiningTable, table_id, "table")


@router.patch("/tables/{table_id}", response_model=TableOut)
def update_table(table_id: str, req: TableUpdate, s: Session = Depends(get_session)):
    t = _get_or_404(s, DiningTable, table_id, "table")
    if req.status is not None:
        _check_table_status(req.status)
        t.status = req.status
    if req.name:
        t.name = req.name.strip()
    s.commit(); s.refresh(t)
    return t


@router.delete("/tables/{table_id}")
def delete_table(table_id: str, s: Session = Depends(get_session)):
    s.delete(_get_or_404(s, DiningTable, table_id, "table")); s.commit()
    return {"ok": True}


# --- Menu ---
class MenuCategoryCreate(BaseModel):
    branch_id: str
    name: str = Field(min_length=1, max_length=120)


class MenuCategoryOut(BaseModel):
    id: str
    branch_id: str
    name: str
    model_config = ConfigDict(from_attributes=True)


@router.post("/menu-categories", response_model=MenuCategoryOut)
def create_menu_category(req: MenuCategoryCreate, s: Session = Depends(get_session)):
    c = MenuCategory(id=str(uuid.uuid4()), branch_id=req.branch_id, name=req.name.strip())
    s.add(c); s.commit(); s.refresh(c)
    return c


@router.get("/menu-categories", response_model=List[MenuCategoryOut])
def list_menu_categories(branch_id: Optional[str] = None, s: Session = Depends(get_session)):
    stmt = select(MenuCategory)
    if branch_id:
        stmt = stmt.where(MenuCategory.branch_id == branch_id)
    return s.execute(stmt.order_by(MenuCategory.name.asc())).scalars().all()


@router.get("/menu-categories/{category_id}", response_model=MenuCategoryOut)
def get_menu_category(category_id: str, s: Session = Depends(get_session)):
    return _get_or_404(s, MenuCategory, category_id, "menu category")


@router.patch("/menu-categories/{category_id}", response_model=MenuCategoryOut)
def update_menu_category(category_id: str, req: MenuCategoryCreate, s: Session = Depends(get_session)):
    c = _get_or_404(s, MenuCategory, category_id, "menu category")
    c.branch_id = req.branch_id
    c.name = req.name.strip()
    s.commit(); s.refresh(c)
    return c


@router.delete("/menu-categories/{category_id}")
def delete_menu_category(category_id: str, s: Session = Depends(get_session)):
    s.delete(_get_or_404(s, MenuCategory, category_id, "menu category")); s.commit()
    return {"ok": True}


class MenuItemCreate(BaseModel):
    branch_id: str
    name: str = Field(min_length=1, max_length=200)
    price: float = Field(ge=0)
    category_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=400)
    image_url: Optional[str] = None
    is_available: bool = True


class MenuItemUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    price: Optional[float] = Field(default=None, ge=0)
    category_id: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=400)
    image_url: Optional[str] = None
    is_available: Optional[bool] = None


class MenuItemOut(BaseModel):
    id: str
    branch_id: str
    category_id: Optional[str]
    name: str
    description: Optional[str]
    image_url: Optional[str]
    price: float
    is_available: bool
    model_config = ConfigDict(from_attributes=True)


@router.post("/menu-items", response_model=MenuItemOut)
def create_menu_item(req: MenuItemCreate, s: Session = Depends(get_session)):
    if req.category_id:
        _get_or_404(s, MenuCategory, req.category_id, "menu category")
    mi = MenuItem(id=str(uuid.uuid4()), **req.model_dump())
    mi.name = mi.name.strip()
    s.add(mi); s.commit(); s.refresh(mi)
    return mi


@router.get("/menu-items", response_model=List[MenuItemOut])
def list_menu_items(
    branch_id: Optional[str] = None,
    category_id: Optional[str] = None,
    available: Optional[bool] = None,
    s: Session = Depends(get_session),
):
    stmt = select(MenuItem)
    if branch_id:
        stmt = stmt.where(MenuItem.branch_id == branch_id)
    if category_id:
        stmt = stmt.where(MenuItem.category_id == category_id)
    if available is not None:
        stmt = stmt.where(MenuItem.is_available == available)
    return s.execute(stmt.order_by(MenuItem.name.asc())).scalars().all()


@router.get("/menu-items/{item_id}", response_model=MenuItemOut)
def get_menu_item(item_id: str, s: Session = Depends(get_session)):
    return _get_or_404(s, MenuItem, item_id, "menu item")


@router.patch("/menu-items/{item_id}", response_model=MenuItemOut)
def update_menu_item(item_id: str, req: MenuItemUpdate, s: Session = Depends(get_session)):
    mi = _get_or_404(s, MenuItem, item_id, "menu item")
    changes = req.model_dump(exclude_unset=True)
    if changes.get("category_id"):
        _get_or_404(s, MenuCategory, changes["category_id"], "menu category")
    _apply(mi, changes)
    s.commit(); s.refresh(mi)
    return mi


@router.delete("/menu-items/{item_id}")
def delete_menu_item(item_id: str, s: Session = Depends(get_session)):
    s.delete(_get_or_404(s, MenuItem, item_id, "menu item")); s.commit()
    return {"ok": True}


# --- Ingredients ---
class IngredientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    unit: str = Field(default="unit", max_length=32)


class IngredientOut(BaseModel):
    id: str
    name: str
    unit: str
    model_config = ConfigDict(from_attributes=True)


@router.post("/ingredients", response_model=IngredientOut)
def create_ingredient(req: IngredientCreate, s: Session = Depends(get_session)):
    ing = Ingredient(id=str(uuid.uuid4()), name=req.name.strip(), unit=req.unit)
    s.add(ing); s.commit(); s.refresh(ing)
    return ing


@router.get("/ingredients", response_model=List[IngredientOut])
def list_ingredients(q: str = "", s: Session = Depends(get_session)):
    stmt = select(Ingredient)
    if q:
        stmt = stmt.where(Ingredient.name.ilike(f"%{q}%"))
    return s.execute(stmt.order_by(Ingredient.name.asc())).scalars().all()


@router.get("/ingredients/{ingredient_id}", response_model=IngredientOut)
def get_ingredient(ingredient_id: str, s: Session = Depends(get_session)):
    return _get_or_404(s, Ingredient, ingredient_id, "ingredient")


@router.patch("/ingredients/{ingredient_id}", response_model=IngredientOut)
def update_ingredient(ingredient_id: str, req: IngredientCreate, s: Session = Depends(get_session)):
    ing = _get_or_404(s, Ingredient, ingredient_id, "ingredient")
    ing.name = req.name.strip()
    ing.unit = req.unit
    s.commit(); s.refresh(ing)
    return ing


@router.delete("/ingredients/{ingredient_id}")
def delete_ingredient(ingredient_id: str, s: Session = Depends(get_session)):
    s.delete(_get_or_404(s, Ingredient, ingredient_id, "ingredient")); s.commit()
    return {"ok": True}
