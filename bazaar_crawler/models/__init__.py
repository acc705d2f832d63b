from bazaar_crawler.models.auction import Auction, CurrentAuction
from bazaar_crawler.models.ban import Ban
from bazaar_crawler.models.highscore import HighscoreEntry
from bazaar_crawler.models.transfer import Transfer

__all__ = ["Auction", "CurrentAuction", "Ban", "HighscoreEntry", "Transfer"]
