"""Test fixtures for deduplication and canonicalization."""

from floodgate.models import GeoPoint, RawRecord

# Two records share category + normalized name + geo bucket; three are distinct
FIVE_RECORD_SCENARIO = [
    RawRecord(
        id="osm:1",
        source_id="osm",
        category="RECREATION",
        name="The Oak Park",
        geometry=GeoPoint(longitude=-87.6244, latitude=41.8781),
        properties={"leisure_type": "public_park"},
        confidence=0.6,
    ),
    RawRecord(
        id="city:17",
        source_id="city",
        category="recreation",
        name="the oak park!",
        geometry=GeoPoint(longitude=-87.6209, latitude=41.8799),
        properties={"facility_type": "dog_park"},
        confidence=0.9,
    ),
    RawRecord(
        id="city:18",
        source_id="city",
        category="RECREATION",
        name="Oak Park",
        geometry=GeoPoint(longitude=-87.6244, latitude=41.8781),
        confidence=0.7,
    ),
    RawRecord(
        id="inat:3",
        source_id="inat",
        category="WILDLIFE",
        name="Branta canadensis",
        geometry=GeoPoint(longitude=-87.6244, latitude=41.8781),
        confidence=0.8,
    ),
    RawRecord(
        id="usps:9",
        source_id="usps",
        category="OTHER",
        name="POI",
        confidence=0.4,
    ),
]

# (name, category, expected display name)
DISPLAY_NAME_CASES = [
    ("", "OTHER", "Unnamed Location"),
    ("Unknown", "OTHER", "Unnamed Location"),
    ("POI", "RECREATION", "Unnamed Location"),
    ("Branta canadensis", "WILDLIFE", "Canada Goose (Branta canadensis)"),
    ("Branta canadensis", "OTHER", "Branta Canadensis"),
    ("the lake_of the-woods", "RECREATION", "Lake of The Woods"),
    ("THE GRAND HOTEL", "OTHER", "Grand Hotel"),
    ("st. louis zoo", "OTHER", "St. Louis Zoo"),
    ("a b cde", "OTHER", "a b Cde"),
]

# (name, expected wildlife group)
WILDLIFE_GROUP_CASES = [
    ("Mallard Duck", "Birds"),
    ("Great Horned Owl", "Birds"),
    ("White-tailed Deer", "Mammals"),
    ("Eastern Gray Squirrel", "Mammals"),
    ("Monarch Butterfly", "Other Wildlife"),
]

# GeoJSON features as collected from sources, one malformed
RAW_FEATURES = [
    {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [-87.6244, 41.8781]},
        "properties": {"name": "Lincoln Park", "category": "recreation", "source": "osm", "confidence": 0.7},
    },
    {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [-87.6245, 41.8782]},
        "properties": {"title": "Lincoln Park", "category": "RECREATION", "source": "city", "confidence": 0.85},
    },
    {
        "type": "Feature",
        "geometry": None,
        "properties": {"species": "Sciurus carolinensis", "category": "WILDLIFE", "source": "inat"},
    },
    {
        "type": "Feature",
        "geometry": {"type": "Point", "coordinates": [-87.6, 41.8]},
        "properties": {"name": "Broken", "source": "osm", "confidence": 1.7},
    },
]
