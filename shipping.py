"""
Delivery-time estimates from seller and buyer governorates.

Cities are grouped by proximity: same city ships in one day, same group in
two, anything else (or anything unknown) in three.
"""
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from config import EXPRESS_SHIPPING_FEE, FREE_SHIPPING_THRESHOLD, STANDARD_SHIPPING_FEE
from schemas import DeliveryMethod

SAME_CITY_DAYS = 1
SAME_GROUP_DAYS = 2
MAX_SHIPPING_DAYS = 3

# Tunisian governorates by proximity. Gafsa, Kebili and Tozeur are listed in
# both CentralWest and SouthWest; the first group in this order wins, so
# they resolve to CentralWest.
PROXIMITY_GROUPS: Mapping[str, Tuple[str, ...]] = MappingProxyType({
    "TunisMetro": ("Tunis", "Ariana", "Ben Arous", "Manouba"),
    "NorthEast": ("Bizerte", "Beja", "Jendouba", "Zaghouan", "Nabeul"),
    "CentralEast": ("Sousse", "Monastir", "Mahdia", "Kairouan"),
    "SouthEast": ("Sfax", "Gabes", "Mednine", "Tataouine"),
    "CentralWest": ("Kasserine", "Sidi Bouzid", "Kebili", "Gafsa", "Tozeur", "Siliana"),
    "SouthWest": ("Gafsa", "Kebili", "Tozeur"),
})


def _index_groups(groups: Mapping[str, Tuple[str, ...]]) -> Mapping[str, str]:
    index = {}
    for group, cities in groups.items():
        for city in cities:
            index.setdefault(city, group)
    return MappingProxyType(index)


CITY_GROUPS: Mapping[str, str] = _index_groups(PROXIMITY_GROUPS)


def find_city_group(city: Optional[str]) -> Optional[str]:
    if not city:
        return None
    return CITY_GROUPS.get(city.strip())


def estimate_days(origin_city: Optional[str], dest_city: Optional[str]) -> int:
    origin = (origin_city or "").strip()
    dest = (dest_city or "").strip()
    if not origin or not dest:
        return MAX_SHIPPING_DAYS
    if origin == dest:
        return SAME_CITY_DAYS

    origin_group = find_city_group(origin)
    dest_group = find_city_group(dest)
    if origin_group is None or dest_group is None:
        return MAX_SHIPPING_DAYS
    if origin_group == dest_group:
        return SAME_GROUP_DAYS
    return MAX_SHIPPING_DAYS


def shipping_fee(subtotal: Decimal, delivery_method: str) -> Decimal:
    method = DeliveryMethod(delivery_method)
    if method is DeliveryMethod.pickup:
        return Decimal("0.00")
    if method is DeliveryMethod.express:
        return EXPRESS_SHIPPING_FEE
    if subtotal > FREE_SHIPPING_THRESHOLD:
        return Decimal("0.00")
    return STANDARD_SHIPPING_FEE
