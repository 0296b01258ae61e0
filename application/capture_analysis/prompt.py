from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .config import CONFIG
from .solar import sun_direction, sun_position, to_utc


@dataclass
class AnalysisContext:
    """Capture metadata the model uses to judge authenticity."""

    location: Optional[Dict[str, Any]] = None  # {latitude, longitude}
    location_info: Optional[Dict[str, Any]] = None  # {country, city, placeName}
    orientation: Optional[Dict[str, Any]] = None  # {bearing, cardinalDirection}
    captured_at: Optional[datetime] = None


def _number(v: Any) -> Optional[float]:
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return None
    return float(v)


def _coordinates(location: Optional[Dict[str, Any]]) -> Optional[Tuple[float, float]]:
    if not isinstance(location, dict):
        return None
    lat = _number(location.get("latitude"))
    lon = _number(location.get("longitude"))
    if lat is None or lon is None:
        return None
    return lat, lon


def build_context_lines(
    location: Optional[Dict[str, Any]] = None,
    location_info: Optional[Dict[str, Any]] = None,
    orientation: Optional[Dict[str, Any]] = None,
    captured_at: Optional[datetime] = None,
) -> List[str]:
    lines: List[str] = []

    if isinstance(location, dict):
        lat, lon = location.get("latitude"), location.get("longitude")
        if lat is not None and lon is not None:
            lines.append(f"GPS coordinates: {lat}, {lon}")

    if isinstance(location_info, dict):
        for key, label in (("country", "Country"), ("city", "City"), ("placeName", "Place")):
            value = location_info.get(key)
            if isinstance(value, str):
                lines.append(f"{label}: {value}")

    coords = _coordinates(location)
    if captured_at is not None and coords is not None:
        ts = to_utc(captured_at)
        sun = sun_position(coords[0], coords[1], ts)
        if sun.is_known:
            lines.append(f"Capture time (UTC): {ts.strftime('%Y-%m-%d %H:%M:%S')}")
            lines.append(
                f"Sun position: azimuth {sun.azimuth:.0f}°, elevation {sun.elevation:.1f}° "
                f"({'DAY' if sun.is_daylight else 'NIGHT'})"
            )
            lines.append(f"Sun towards: {sun_direction(sun.azimuth)}")

    if isinstance(orientation, dict):
        bearing = _number(orientation.get("bearing"))
        if bearing is not None:
            cardinal = orientation.get("cardinalDirection")
            if not isinstance(cardinal, str):
                cardinal = "N/A"
            lines.append(f"Camera bearing: {bearing:.0f}° ({cardinal})")

    return lines


def context_lines_for(context: Optional[AnalysisContext]) -> List[str]:
    if context is None:
        return []
    return build_context_lines(
        context.location, context.location_info, context.orientation, context.captured_at
    )


def build_context_block(lines: List[str]) -> str:
    if not lines:
        return ""
    return (
        "\n\nGEOGRAPHIC AND TEMPORAL CONTEXT OF THE CAPTURE:\n"
        + "\n".join(lines)
        + "\n\nUSE THIS CONTEXT TO VALIDATE AUTHENTICITY:\n"
        "- Check that the lighting in the image matches the expected sun position\n"
        "- If it is NIGHT but the image shows bright sunlight -> probably SCREEN_PHOTO\n"
        "- If shadows do not point away from the sun position -> SCREEN_PHOTO or edited\n"
        "- Compare the camera bearing with the sun position to validate lighting\n"
        "- Tell originals from replicas using the GPS location\n"
        "- Detect photos of screens from temporal or lighting inconsistencies\n"
    )


_SCHEMA = """{
  "name": "Name of the main place, monument, animal or concept",
  "type": "PLACE/MONUMENT/NATURE/ANIMAL/OBJECT/OTHER",
  "category": "Specific category (LANDMARK/NATURE/WILDLIFE/FOOD/ARCHITECTURE/ART/CULTURE/TRANSPORTATION)",
  "tags": ["descriptive", "searchable", "keywords"],
  "description": "Detailed description of what is visible",
  "rarity": "COMMON/UNCOMMON/RARE/VERY_RARE/LEGENDARY",
  "confidence": 0.95,
  "difficulty": "EASY/MEDIUM/HARD/EXPERT",
  "specificity_level": "How specific the identification is",
  "broader_context": "Wider context or additional information",
  "encounter_rarity": "How hard it is to find this here",
  "authenticity": "AUTHENTIC/REPLICA/SCREEN_PHOTO/UNCERTAIN",
  "geographic_match": true,
  "verified": true,
  "authenticity_reasoning": "Why it is authentic, a replica or a screen photo, based on location and context",
  "verification_reasoning": "Why it is or is not verified, based on geographic knowledge of its habitat or location"
}"""

_RULES = """

RULES for tags (3-8 tags per image):
- Include: physical traits, cultural context, era, materials, dominant colours, geographic location
- Format: lowercase, no accents, singular, in {tag_language}
- Examples: ["volcanico", "unesco", "colonial", "turquesa", "cascada", "tropical"]
- Avoid: repeating the exact name or the category

RULES for difficulty:
- EASY: Very common, easy to find, visible from afar
- MEDIUM: Needs some searching, moderately common
- HARD: Hard to find, needs effort or local knowledge
- EXPERT: Extremely rare, needs special conditions or permission

RULES for authenticity (VERY IMPORTANT - USE THE GEOGRAPHIC AND TEMPORAL CONTEXT):
- AUTHENTIC: Real object/place captured at its original location. Check that:
  * The GPS location matches where the object should be
  * Lighting is consistent with the time of day and the computed sun position
  * Shadows point in the right direction for the sun position
  * If it is NIGHT (negative solar elevation) the image must be a night image
- REPLICA: A copy of the original object at a different location (e.g. Eiffel Tower in Las Vegas when GPS says USA)
- SCREEN_PHOTO: A photo of a screen, printed photo, poster or digital image. Critical signs:
  * Visible pixels or a screen matrix pattern
  * Artificial brightness or glass/screen reflections
  * Lighting inconsistent with time and sun position (e.g. bright sun at night)
  * Shadows in an impossible direction for the location/time
  * Visible photo frame, screen bezel or device
  * Degraded image quality (photo of a photo)
- UNCERTAIN: Not enough information to decide

RULES for geographic_match:
- true: The GPS location is consistent with the identified object AND the lighting matches time/sun position
- false: The GPS location does NOT match OR there are serious temporal inconsistencies
- null: Not enough geographic context to decide

RULES for verified (STRICT GEOGRAPHIC VALIDATION):
This field certifies that the object/animal/place is REALLY observable from the given GPS location.

verified = true ONLY IF ALL OF THESE HOLD:
1. authenticity = "AUTHENTIC" (not a replica, not a screen photo)
2. geographic_match = true (GPS matches)
3. For ANIMALS: the animal lives naturally in that region OR is in a KNOWN zoo/sanctuary at that exact location
   - Example: Lion in Kenya (Masai Mara) -> verified=true
   - Example: Elephant in Costa Rica (random location) -> verified=false
   - Example: Elephant at "Zoo Simon Bolivar, San Jose, CR" -> verified=true (known zoo)
4. For PLACES/MONUMENTS: the place exists at those exact GPS coordinates
   - Example: Eiffel Tower in Paris (48.858N, 2.294E) -> verified=true
   - Example: Eiffel Tower in Las Vegas -> verified=false (replica)
5. For NATURE: the natural phenomenon is possible at that geographic location
   - Example: Arenal Volcano in La Fortuna, CR -> verified=true
   - Example: Glacier in lowland Ecuador -> verified=false (geographically unlikely)
6. Lighting and time are consistent (not a screen photo)

verified = false IF ANY OF THESE HOLD:
- It is a replica at a different location
- It is a photo of a screen or poster
- The animal is outside its natural habitat and NOT in a known zoo
- The GPS location is impossible for the object
- Temporal inconsistencies (time vs lighting)

IMPORTANT: Do not assume there are zoos or sanctuaries unless the geographic context names a specific known place.

Answer ONLY with the JSON, no additional text."""


def build_prompt(context_block: str = "") -> str:
    return (
        "Analyze this image and return detailed information as JSON with the following structure:\n"
        + _SCHEMA
        + context_block
        + _RULES.format(tag_language=CONFIG.get("TAG_LANGUAGE", "Spanish"))
    )
