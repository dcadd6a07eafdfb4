"""Menu-to-system classification of mirrored articles."""

import logging
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kb_governance.config import settings
from kb_governance.db.models import KbSystem, MenuMapping, SyncIssueType
from kb_governance.source.models import Menu

logger = logging.getLogger(__name__)


@dataclass
class Classification:
    """Result of classifying one article.

    ``issue_type`` is set when the article fell back to the default system.
    """

    system_id: int
    issue_type: SyncIssueType | None = None
    message: str | None = None

    @property
    def is_fallback(self) -> bool:
        return self.issue_type is not None


class MenuClassifier:
    """Resolve source menus to internal systems, falling back to the default system."""

    def __init__(self, source_system: str | None = None, default_system_code: str | None = None):
        self.source_system = source_system or settings.SOURCE_SYSTEM
        self.default_system_code = default_system_code or settings.DEFAULT_SYSTEM_CODE

    async def classify(self, session: AsyncSession, menu: Menu | None) -> Classification:
        if menu is None or menu.id is None:
            default = await self.default_system(session)
            return Classification(default.id, SyncIssueType.MENU_NULL, "Article has no menu at the source")

        mapping = await self.find_mapping(session, menu.id)
        if mapping is not None:
            return Classification(mapping.system_id)

        default = await self.default_system(session)
        logger.warning(
            f"Menu {menu.id} ({menu.name!r}) is not mapped; falling back to {self.default_system_code}"
        )
        return Classification(
            default.id,
            SyncIssueType.MENU_NOT_MAPPED,
            f"source_menu_id={menu.id} source_menu_name='{menu.name or ''}'",
        )

    async def find_mapping(self, session: AsyncSession, menu_id: int) -> MenuMapping | None:
        result = await session.execute(
            select(MenuMapping).where(
                MenuMapping.source_system == self.source_system,
                MenuMapping.source_menu_id == menu_id,
                MenuMapping.active.is_(True),
            )
        )
        return result.scalar_one_or_none()

    async def default_system(self, session: AsyncSession) -> KbSystem:
        """Get the fallback system, creating it on first use."""
        system = await self.get_system(session, self.default_system_code)
        if system is None:
            system = KbSystem(code=self.default_system_code, name="General", active=True)
            session.add(system)
            await session.flush()
            logger.info(f"Created default system {self.default_system_code}")
        return system

    async def get_system(self, session: AsyncSession, code: str) -> KbSystem | None:
        result = await session.execute(select(KbSystem).where(KbSystem.code == code))
        return result.scalar_one_or_none()

    async def map_menu(
        self,
        session: AsyncSession,
        menu_id: int,
        system_code: str,
        menu_name: str | None = None,
        system_name: str | None = None,
    ) -> MenuMapping:
        """Create or update the mapping of a source menu to a system (created if missing)."""
        system = await self.get_system(session, system_code)
        if system is None:
            system = KbSystem(code=system_code, name=system_name or system_code, active=True)
            session.add(system)
            await session.flush()

        result = await session.execute(
            select(MenuMapping).where(
                MenuMapping.source_system == self.source_system,
                MenuMapping.source_menu_id == menu_id,
            )
        )
        mapping = result.scalar_one_or_none()
        if mapping is None:
            mapping = MenuMapping(source_system=self.source_system, source_menu_id=menu_id)
            session.add(mapping)
        mapping.system_id = system.id
        mapping.source_menu_name = menu_name or mapping.source_menu_name
        mapping.active = True
        await session.flush()
        return mapping
