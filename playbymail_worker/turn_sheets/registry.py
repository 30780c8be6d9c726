"""Processor registry.

Maps ``(game_type, sheet_type)`` to the generator, scanner and resolver
that handle it, and ``game_type`` to the rules that plan each turn's sheets.
Built once per process and read-only afterwards.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from functools import lru_cache
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol

from ..errors import UnsupportedSheet
from .generator import TurnSheetGenerator
from .inventory_management import InventoryManagementGenerator, InventoryManagementScanner
from .location_choice import LocationChoiceGenerator, LocationChoiceScanner
from .ocr import CachedOCR, OCRBackend, build_ocr_backend
from .scanner import TurnSheetScanner

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from ..db.games import Account, Game, GameInstance, GameSubscription
    from ..db.turn_sheets import TurnSheet

Resolver = Callable[["Session", "GameInstance", "TurnSheet"], None]


class GameRules(Protocol):
    """Per game type hooks used by the orchestrator."""

    game_type: str

    def plan_sheets(
        self,
        session: Session,
        game: Game,
        instance: GameInstance,
        subscription: GameSubscription,
        account: Account,
    ) -> list[tuple[str, dict[str, Any]]]: ...

    def is_complete(self, session: Session, game: Game, instance: GameInstance) -> bool: ...


@dataclass(frozen=True)
class SheetProcessor:
    game_type: str
    sheet_type: str
    generator: TurnSheetGenerator
    scanner: TurnSheetScanner
    resolver: Resolver


class ProcessorRegistry:
    def __init__(self, processors: Iterable[SheetProcessor], rules: Mapping[str, GameRules]) -> None:
        processors = list(processors)
        self._processors = MappingProxyType({(p.game_type, p.sheet_type): p for p in processors})
        self._rules = MappingProxyType(dict(rules))
        scanners: dict[str, TurnSheetScanner] = {}
        for processor in processors:
            scanners.setdefault(processor.sheet_type, processor.scanner)
        self._scanners = MappingProxyType(scanners)

    def lookup(self, game_type: str, sheet_type: str) -> SheetProcessor:
        try:
            return self._processors[(game_type, sheet_type)]
        except KeyError:
            raise UnsupportedSheet(
                f"no processor for game_type={game_type!r} sheet_type={sheet_type!r}",
                game_type=game_type,
                sheet_type=sheet_type,
            ) from None

    def rules_for(self, game_type: str) -> GameRules:
        try:
            return self._rules[game_type]
        except KeyError:
            raise UnsupportedSheet(f"no rules for game_type={game_type!r}", game_type=game_type) from None

    def scanners(self, hint: str | None = None) -> list[TurnSheetScanner]:
        """Scanners in the fixed trial order, with the hinted sheet type first."""
        ordered = list(self._scanners.values())
        if hint and hint in self._scanners:
            first = self._scanners[hint]
            ordered = [first] + [s for s in ordered if s is not first]
        return ordered


def build_registry(ocr: OCRBackend) -> ProcessorRegistry:
    from ..services.resolvers import adventure

    rules = adventure.AdventureGameRules()
    ocr = CachedOCR(ocr)
    processors = [
        SheetProcessor(
            game_type=adventure.GAME_TYPE,
            sheet_type=LocationChoiceGenerator.sheet_type,
            generator=LocationChoiceGenerator(),
            scanner=LocationChoiceScanner(ocr),
            resolver=adventure.resolve_location_choice,
        ),
        SheetProcessor(
            game_type=adventure.GAME_TYPE,
            sheet_type=InventoryManagementGenerator.sheet_type,
            generator=InventoryManagementGenerator(),
            scanner=InventoryManagementScanner(ocr),
            resolver=adventure.resolve_inventory_management,
        ),
    ]
    return ProcessorRegistry(processors, {rules.game_type: rules})


@lru_cache(maxsize=1)
def get_registry() -> ProcessorRegistry:
    """Process-wide registry using the configured OCR backend."""
    return build_registry(build_ocr_backend())
