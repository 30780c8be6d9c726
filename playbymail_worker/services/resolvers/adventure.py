"""Adventure game rules and resolvers.

Each account plays one character. Every turn it gets a location choice sheet,
plus an inventory management sheet when it carries items or items lie where
it stands. Inventory changes resolve before movement so pick-ups refer to
the location the sheet was printed for.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ...db.adventure import (
    AdventureCharacterInstance,
    AdventureItemInstance,
    AdventureLocation,
    AdventureLocationLink,
)
from ...db.games import Account, Game, GameInstance, GameSubscription
from ...db.turn_sheets import TurnSheet
from ...errors import ResolverFailed
from ...logging import logger
from ...models.schemas import InventoryManagementTemplate, LocationChoiceTemplate
from ...turn_sheets.location_choice import CHOICE_SLOT
from ...turn_sheets.scanner import normalise_label

GAME_TYPE = "adventure"

INVENTORY_SHEET = "inventory_management"
LOCATION_SHEET = "location_choice"


class AdventureGameRules:
    game_type = GAME_TYPE

    def plan_sheets(
        self,
        session: Session,
        game: Game,
        instance: GameInstance,
        subscription: GameSubscription,
        account: Account,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Sheet types and type-specific template fields for one account, in sheet order."""
        character = ensure_character(session, game, instance, account)
        location = session.get(AdventureLocation, character.location_id) if character.location_id else None
        carried = _carried_items(session, character)
        lying = _items_at(session, instance, location)

        sheets: list[tuple[str, dict[str, Any]]] = []
        if carried or lying:
            sheets.append(
                (
                    INVENTORY_SHEET,
                    {
                        "character_name": character.name,
                        "current_location_name": location.name if location else None,
                        "health": character.health,
                        "inventory_capacity": character.inventory_capacity,
                        "current_inventory": [
                            {
                                "item_instance_id": item.id,
                                "item_name": item.name,
                                "item_description": item.description,
                                "is_equipped": item.is_equipped,
                                "equipment_slot": item.equipment_slot,
                                "can_equip": item.can_equip,
                            }
                            for item in carried
                        ],
                        "location_items": [
                            {
                                "item_instance_id": item.id,
                                "item_name": item.name,
                                "item_description": item.description,
                            }
                            for item in lying
                        ],
                    },
                )
            )

        links = []
        if location is not None:
            links = session.scalars(
                select(AdventureLocationLink)
                .where(AdventureLocationLink.from_location_id == location.id)
                .order_by(AdventureLocationLink.id)
            ).all()
        sheets.append(
            (
                LOCATION_SHEET,
                {
                    "location_name": location.name if location else None,
                    "location_description": location.description if location else None,
                    "location_options": [
                        {
                            "location_link_id": link.id,
                            "name": link.name,
                            "description": link.description,
                            "destination_location_id": link.to_location_id,
                        }
                        for link in links
                    ],
                },
            )
        )
        return sheets

    def is_complete(self, session: Session, game: Game, instance: GameInstance) -> bool:
        return game.max_turns is not None and instance.current_turn_number >= game.max_turns


def ensure_character(
    session: Session, game: Game, instance: GameInstance, account: Account
) -> AdventureCharacterInstance:
    """Return the account's character, creating it at the starting location on first use."""
    character = session.scalar(
        select(AdventureCharacterInstance).where(
            AdventureCharacterInstance.game_instance_id == instance.id,
            AdventureCharacterInstance.account_id == account.id,
        )
    )
    if character is not None:
        return character
    start = session.scalar(
        select(AdventureLocation)
        .where(AdventureLocation.game_id == game.id)
        .order_by(AdventureLocation.is_starting_location.desc(), AdventureLocation.id)
    )
    character = AdventureCharacterInstance(
        game_instance_id=instance.id,
        account_id=account.id,
        name=account.name,
        location_id=start.id if start else None,
    )
    session.add(character)
    session.flush()
    logger.info(
        "adventure_character_created",
        game_instance_id=instance.id,
        account_id=account.id,
        location_id=character.location_id,
    )
    return character


def _carried_items(session: Session, character: AdventureCharacterInstance) -> list[AdventureItemInstance]:
    return list(
        session.scalars(
            select(AdventureItemInstance)
            .where(AdventureItemInstance.character_instance_id == character.id)
            .order_by(AdventureItemInstance.id)
        )
    )


def _items_at(
    session: Session, instance: GameInstance, location: AdventureLocation | None
) -> list[AdventureItemInstance]:
    if location is None:
        return []
    return list(
        session.scalars(
            select(AdventureItemInstance)
            .where(
                AdventureItemInstance.game_instance_id == instance.id,
                AdventureItemInstance.location_id == location.id,
                AdventureItemInstance.character_instance_id.is_(None),
            )
            .order_by(AdventureItemInstance.id)
        )
    )


def _character_for(session: Session, instance: GameInstance, sheet: TurnSheet) -> AdventureCharacterInstance:
    character = session.scalar(
        select(AdventureCharacterInstance).where(
            AdventureCharacterInstance.game_instance_id == instance.id,
            AdventureCharacterInstance.account_id == sheet.account_id,
        )
    )
    if character is None:
        raise ResolverFailed("no character for sheet", sheet_id=sheet.id)
    return character


def resolve_location_choice(session: Session, instance: GameInstance, sheet: TurnSheet) -> None:
    """Move the character along the chosen pathway."""
    chosen = (sheet.scanned_data or {}).get(CHOICE_SLOT) or []
    if len(chosen) != 1:
        raise ResolverFailed(f"expected one destination, got {len(chosen)}", sheet_id=sheet.id)
    template = LocationChoiceTemplate.model_validate(sheet.template_data)
    wanted = normalise_label(chosen[0])
    option = next((o for o in template.location_options if normalise_label(o.name) == wanted), None)
    if option is None:
        raise ResolverFailed(f"unknown destination {chosen[0]!r}", sheet_id=sheet.id)

    destination_id = option.destination_location_id
    if destination_id is None:
        link = session.get(AdventureLocationLink, option.location_link_id)
        if link is None:
            raise ResolverFailed("pathway no longer exists", sheet_id=sheet.id)
        destination_id = link.to_location_id

    character = _character_for(session, instance, sheet)
    previous = character.location_id
    character.location_id = destination_id
    session.flush()
    logger.info(
        "adventure_character_moved",
        game_instance_id=instance.id,
        character_id=character.id,
        from_location_id=previous,
        to_location_id=destination_id,
    )


def _lookup(names: list[str], catalogue: dict[str, int], sheet: TurnSheet, slot: str) -> list[int]:
    ids = []
    for name in names:
        item_id = catalogue.get(normalise_label(name))
        if item_id is None:
            logger.warning("adventure_unknown_item_ignored", sheet_id=sheet.id, slot=slot, item=name)
            continue
        ids.append(item_id)
    return ids


def resolve_inventory_management(session: Session, instance: GameInstance, sheet: TurnSheet) -> None:
    """Apply drop, unequip, equip and pick-up choices in that order."""
    template = InventoryManagementTemplate.model_validate(sheet.template_data)
    choices = sheet.scanned_data or {}
    character = _character_for(session, instance, sheet)

    carried_names = {normalise_label(i.item_name): i.item_instance_id for i in template.current_inventory}
    lying_names = {normalise_label(i.item_name): i.item_instance_id for i in template.location_items}

    def carried(item_id: int) -> AdventureItemInstance | None:
        item = session.get(AdventureItemInstance, item_id)
        if item is None or item.character_instance_id != character.id:
            return None
        return item

    for item_id in _lookup(choices.get("drop", []), carried_names, sheet, "drop"):
        item = carried(item_id)
        if item is not None:
            item.character_instance_id = None
            item.location_id = character.location_id
            item.is_equipped = False

    for item_id in _lookup(choices.get("unequip", []), carried_names, sheet, "unequip"):
        item = carried(item_id)
        if item is not None:
            item.is_equipped = False

    for item_id in _lookup(choices.get("equip", []), carried_names, sheet, "equip"):
        item = carried(item_id)
        if item is None or not item.can_equip:
            continue
        if item.equipment_slot:
            for other in _carried_items(session, character):
                if other.id != item.id and other.is_equipped and other.equipment_slot == item.equipment_slot:
                    other.is_equipped = False
        item.is_equipped = True

    session.flush()
    load = len(_carried_items(session, character))
    for item_id in _lookup(choices.get("pick_up", []), lying_names, sheet, "pick_up"):
        if load >= character.inventory_capacity:
            logger.info("adventure_inventory_full", sheet_id=sheet.id, character_id=character.id)
            break
        item = session.get(AdventureItemInstance, item_id)
        if (
            item is None
            or item.character_instance_id is not None
            or item.location_id != character.location_id
        ):
            continue
        item.character_instance_id = character.id
        item.location_id = None
        load += 1
    session.flush()
    logger.info(
        "adventure_inventory_resolved",
        game_instance_id=instance.id,
        character_id=character.id,
        carried=load,
    )
