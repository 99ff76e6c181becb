"""
Tournament games extractor (/tournament/{id}?tab=games)
"""

from typing import Any, Dict, List, Optional
from bs4 import BeautifulSoup, Tag

from core.exceptions import DataFormatError
from ingestion.extractors.base import (
    PageExtractor,
    clean_text,
    parse_int,
    parse_date,
    parse_duration_minutes,
    parse_winner,
    parse_role,
    link_id,
)
from models.base import EntityKind, PlayerRole, Team, WinnerTeam

BLACK_ROLES = {PlayerRole.DON, PlayerRole.MAFIA}


def team_for_role(role: PlayerRole) -> Team:
    return Team.BLACK if role in BLACK_ROLES else Team.RED


def is_winner(team: Team, winner: Optional[WinnerTeam]) -> bool:
    if winner is None or winner == WinnerTeam.DRAW:
        return False
    return team.value == winner.value


class GamesExtractor(PageExtractor):
    """
    Game cards of a tournament. Each card carries the game link, date,
    duration, winner and a participant table; team and win flag are derived
    from the role and the winning side.
    """

    kind = EntityKind.GAME
    container_selector = ".game-card, .game-row, .games"

    def rows(self, soup: BeautifulSoup) -> List[Tag]:
        return soup.select(".game-card, .game-row")

    def _game_id(self, card: Tag) -> Optional[str]:
        return card.get("data-game-id") or link_id(card, "game")

    def row_identity(self, row: Tag, context: Dict[str, Any]) -> Optional[str]:
        return self._game_id(row)

    def extract_row(self, row: Tag, context: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        game_id = self._game_id(row)
        if game_id is None:
            return None

        winner = parse_winner(row.select_one(".winner"))
        participants = []
        for seat in row.select(".participant, tbody tr"):
            player_id = link_id(seat, "stats")
            if player_id is None:
                continue
            role = parse_role(seat.select_one(".role"))
            if role is None:
                raise DataFormatError(
                    f"Unknown role for player {player_id} in game {game_id}",
                    context={"game_id": game_id, "role": clean_text(seat.select_one(".role"))}
                )
            team = team_for_role(role)
            participants.append({
                "player_external_id": player_id,
                "role": role,
                "team": team,
                "is_winner": is_winner(team, winner),
                "performance_score": parse_int(seat.select_one(".score")),
            })

        return {
            "external_id": game_id,
            "tournament_external_id": context.get("tournament_id"),
            "date": parse_date(row.select_one(".game-date, .date")),
            "duration_minutes": parse_duration_minutes(row.select_one(".duration")),
            "winner_team": winner,
            "participants": participants,
        }
