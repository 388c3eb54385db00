# sqlassist/stores.py
"""
CRUD stores over the application database. Every method is best-effort:
database errors are logged, rolled back and turned into an empty / None result,
so a broken store never takes a generation request down with it.
"""
import json
import datetime
from typing import List, Optional, Dict, Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from sqlassist.models import ConversationMemory, ChatMessage, SqlTemplateRecord
from sqlassist.monitoring import logger
from sqlassist.schemas import MemoryEntry, SqlTemplate


class MemoryStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def append(self, user_id: str, session_id: str, entry: MemoryEntry) -> Optional[int]:
        db = self._session_factory()
        try:
            row = ConversationMemory(
                user_id=user_id,
                session_id=session_id,
                query=entry.query,
                sql=entry.sql,
                reasoning=entry.reasoning,
                source=entry.source,
                created_at=entry.created_at,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row.id
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Memory append failed", extra={"user_id": user_id, "session_id": session_id})
            return None
        finally:
            db.close()

    def get_recent(self, user_id: str, session_id: str, limit: int = 5) -> List[MemoryEntry]:
        """Most recent first."""
        db = self._session_factory()
        try:
            rows = (
                db.query(ConversationMemory)
                .filter(ConversationMemory.user_id == user_id, ConversationMemory.session_id == session_id)
                .order_by(ConversationMemory.created_at.desc(), ConversationMemory.id.desc())
                .limit(limit)
                .all()
            )
            return [self._to_entry(r) for r in rows]
        except SQLAlchemyError:
            logger.exception("Memory read failed", extra={"user_id": user_id, "session_id": session_id})
            return []
        finally:
            db.close()

    def get_session(self, user_id: str, session_id: str) -> List[MemoryEntry]:
        """Whole session, oldest first."""
        db = self._session_factory()
        try:
            rows = (
                db.query(ConversationMemory)
                .filter(ConversationMemory.user_id == user_id, ConversationMemory.session_id == session_id)
                .order_by(ConversationMemory.created_at.asc(), ConversationMemory.id.asc())
                .all()
            )
            return [self._to_entry(r) for r in rows]
        except SQLAlchemyError:
            logger.exception("Memory read failed", extra={"user_id": user_id, "session_id": session_id})
            return []
        finally:
            db.close()

    def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(
                    ConversationMemory.session_id,
                    func.count(ConversationMemory.id),
                    func.max(ConversationMemory.created_at),
                )
                .filter(ConversationMemory.user_id == user_id)
                .group_by(ConversationMemory.session_id)
                .order_by(func.max(ConversationMemory.created_at).desc())
                .all()
            )
            return [
                {"session_id": sid, "turns": int(count), "last_activity": last.isoformat() if last else None}
                for sid, count, last in rows
            ]
        except SQLAlchemyError:
            logger.exception("Session listing failed", extra={"user_id": user_id})
            return []
        finally:
            db.close()

    @staticmethod
    def _to_entry(row: ConversationMemory) -> MemoryEntry:
        return MemoryEntry(
            query=row.query,
            sql=row.sql or "",
            reasoning=row.reasoning or "",
            source=row.source,
            created_at=row.created_at,
        )


class ChatStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def save_message(self, user_id: str, session_id: str, role: str, content: str) -> Optional[int]:
        if not content:
            return None
        db = self._session_factory()
        try:
            row = ChatMessage(user_id=user_id, session_id=session_id, role=role, content=content,
                              created_at=datetime.datetime.utcnow())
            db.add(row)
            db.commit()
            db.refresh(row)
            return row.id
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Chat message save failed", extra={"user_id": user_id, "session_id": session_id})
            return None
        finally:
            db.close()

    def get_messages(self, user_id: str, session_id: str, keyword: Optional[str] = None,
                     limit: int = 100) -> List[Dict[str, Any]]:
        """The newest ``limit`` messages of a session, returned oldest first."""
        if limit <= 0:
            limit = 100
        db = self._session_factory()
        try:
            q = db.query(ChatMessage).filter(ChatMessage.user_id == user_id, ChatMessage.session_id == session_id)
            if keyword:
                q = q.filter(ChatMessage.content.contains(keyword, autoescape=True))
            rows = q.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(limit).all()
            return [
                {"role": r.role, "content": r.content, "created_at": r.created_at.isoformat()}
                for r in reversed(rows)
            ]
        except SQLAlchemyError:
            logger.exception("Chat read failed", extra={"user_id": user_id, "session_id": session_id})
            return []
        finally:
            db.close()

    def list_sessions(self, user_id: str) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(
                    ChatMessage.session_id,
                    func.count(ChatMessage.id),
                    func.max(ChatMessage.created_at),
                )
                .filter(ChatMessage.user_id == user_id)
                .group_by(ChatMessage.session_id)
                .order_by(func.max(ChatMessage.created_at).desc())
                .all()
            )
            return [
                {"session_id": sid, "messages": int(count), "last_activity": last.isoformat() if last else None}
                for sid, count, last in rows
            ]
        except SQLAlchemyError:
            logger.exception("Chat session listing failed", extra={"user_id": user_id})
            return []
        finally:
            db.close()


class TemplateStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def list_all(self) -> List[SqlTemplate]:
        """Templates in insertion order, which is also the tie-break order for matching."""
        db = self._session_factory()
        try:
            rows = db.query(SqlTemplateRecord).order_by(SqlTemplateRecord.id.asc()).all()
            return [self._to_template(r) for r in rows]
        except SQLAlchemyError:
            logger.exception("Template read failed")
            return []
        finally:
            db.close()

    def get(self, template_id: str) -> Optional[SqlTemplate]:
        db = self._session_factory()
        try:
            row = db.query(SqlTemplateRecord).filter(SqlTemplateRecord.template_id == template_id).first()
            return self._to_template(row) if row else None
        except SQLAlchemyError:
            logger.exception("Template read failed", extra={"template_id": template_id})
            return None
        finally:
            db.close()

    def add(self, template: SqlTemplate) -> Optional[int]:
        db = self._session_factory()
        try:
            row = SqlTemplateRecord(
                template_id=template.template_id,
                name=template.name,
                keywords_json=json.dumps(template.keywords, ensure_ascii=False),
                sql=template.sql,
                description=template.description,
                owner_id=template.owner_id,
                is_system=template.is_system,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return row.id
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Template save failed", extra={"template_id": template.template_id})
            return None
        finally:
            db.close()

    def update(self, template: SqlTemplate) -> bool:
        """Overwrite name, keywords, SQL and description. Ownership never changes."""
        db = self._session_factory()
        try:
            row = db.query(SqlTemplateRecord).filter(SqlTemplateRecord.template_id == template.template_id).first()
            if row is None:
                return False
            row.name = template.name
            row.keywords_json = json.dumps(template.keywords, ensure_ascii=False)
            row.sql = template.sql
            row.description = template.description
            db.commit()
            return True
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Template update failed", extra={"template_id": template.template_id})
            return False
        finally:
            db.close()

    def delete(self, template_id: str) -> bool:
        db = self._session_factory()
        try:
            removed = db.query(SqlTemplateRecord).filter(SqlTemplateRecord.template_id == template_id).delete()
            db.commit()
            return removed > 0
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Template delete failed", extra={"template_id": template_id})
            return False
        finally:
            db.close()

    def seed_from_file(self, path: str) -> int:
        """Load system templates from a JSON list when the table is empty. Returns the number added."""
        if self.list_all():
            return 0
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError):
            logger.warning("Could not read default templates", extra={"path": path})
            return 0
        added = 0
        for item in raw if isinstance(raw, list) else []:
            try:
                tpl = SqlTemplate(**item).model_copy(update={"is_system": True, "owner_id": None})
            except (TypeError, ValueError):
                logger.warning("Skipping malformed template", extra={"template": str(item)[:200]})
                continue
            if self.add(tpl) is not None:
                added += 1
        return added

    @staticmethod
    def is_editable(template: SqlTemplate, user_id: str) -> bool:
        return not template.is_system and template.owner_id == user_id

    @staticmethod
    def _to_template(row: SqlTemplateRecord) -> SqlTemplate:
        try:
            keywords = json.loads(row.keywords_json or "[]")
        except ValueError:
            keywords = []
        return SqlTemplate(
            template_id=row.template_id,
            name=row.name,
            keywords=keywords,
            sql=row.sql,
            description=row.description or "",
            owner_id=row.owner_id,
            is_system=bool(row.is_system),
        )
