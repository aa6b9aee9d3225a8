# routers/messages.py — Project message threads over HTTP
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from auth import get_current_user, CurrentUser
from database import get_db_session
from message_thread import MessageOut, message_service

router = APIRouter(prefix="/api/v1", tags=["Messages"])


class MessageCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=10000)


@router.post("/projects/{project_id}/messages", response_model=MessageOut, status_code=201)
async def send_message(
    project_id: int,
    data: MessageCreate,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Post a message to a project thread and notify every member"""
    return await message_service.send(db, project_id, data.text, user)


@router.get("/messages/search", response_model=List[MessageOut])
async def search_messages(
    project_id: int = Query(...),
    text: str = Query(""),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Case-insensitive substring search within one project thread"""
    return await message_service.search(db, project_id, text, user)


@router.get("/messages/{message_id}", response_model=MessageOut)
async def get_message(
    message_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await message_service.get(db, message_id, user)


@router.post("/messages/{message_id}/read", response_model=MessageOut)
async def mark_message_read(
    message_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    return await message_service.mark_read(db, message_id, user)


@router.delete("/messages/{message_id}", response_model=MessageOut)
async def delete_message(
    message_id: int,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a message (author, or an admin member of the project)"""
    return await message_service.delete(db, message_id, user)
