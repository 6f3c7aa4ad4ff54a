"""Display names and country codes for provider regions."""

from .types import Location

# DigitalOcean region slugs are a city id plus a datacenter number, e.g. "nyc3"
DIGITALOCEAN_CITIES = {
    "ams": ("Amsterdam", "NL"),
    "blr": ("Bangalore", "IN"),
    "fra": ("Frankfurt", "DE"),
    "lon": ("London", "GB"),
    "nyc": ("New York", "US"),
    "sfo": ("San Francisco", "US"),
    "sgp": ("Singapore", "SG"),
    "syd": ("Sydney", "AU"),
    "tor": ("Toronto", "CA"),
}

GCP_REGIONS = {
    "asia-east1": ("Changhua County, Taiwan", "TW"),
    "asia-east2": ("Hong Kong", "HK"),
    "asia-northeast1": ("Tokyo, Japan", "JP"),
    "asia-northeast2": ("Osaka, Japan", "JP"),
    "asia-northeast3": ("Seoul, South Korea", "KR"),
    "asia-south1": ("Mumbai, India", "IN"),
    "asia-southeast1": ("Jurong West, Singapore", "SG"),
    "asia-southeast2": ("Jakarta, Indonesia", "ID"),
    "australia-southeast1": ("Sydney, Australia", "AU"),
    "europe-central2": ("Warsaw, Poland", "PL"),
    "europe-north1": ("Hamina, Finland", "FI"),
    "europe-west1": ("St. Ghislain, Belgium", "BE"),
    "europe-west2": ("London, England, UK", "GB"),
    "europe-west3": ("Frankfurt, Germany", "DE"),
    "europe-west4": ("Eemshaven, Netherlands", "NL"),
    "europe-west6": ("Zürich, Switzerland", "CH"),
    "northamerica-northeast1": ("Montréal, Québec, Canada", "CA"),
    "southamerica-east1": ("Osasco (São Paulo), Brazil", "BR"),
    "us-central1": ("Council Bluffs, Iowa, USA", "US"),
    "us-east1": ("Moncks Corner, South Carolina, USA", "US"),
    "us-east4": ("Ashburn, Northern Virginia, USA", "US"),
    "us-west1": ("The Dalles, Oregon, USA", "US"),
    "us-west2": ("Los Angeles, California, USA", "US"),
    "us-west3": ("Salt Lake City, Utah, USA", "US"),
    "us-west4": ("Las Vegas, Nevada, USA", "US"),
}

LIGHTSAIL_REGIONS = {
    "us-east-1": ("US East (N. Virginia)", "US"),
    "us-east-2": ("US East (Ohio)", "US"),
    "us-west-2": ("US West (Oregon)", "US"),
    "ap-south-1": ("Asia Pacific (Mumbai)", "IN"),
    "ap-northeast-2": ("Asia Pacific (Seoul)", "KR"),
    "ap-southeast-1": ("Asia Pacific (Singapore)", "SG"),
    "ap-southeast-2": ("Asia Pacific (Sydney)", "AU"),
    "ap-northeast-1": ("Asia Pacific (Tokyo)", "JP"),
    "ca-central-1": ("Canada (Central)", "CA"),
    "eu-central-1": ("EU (Frankfurt)", "DE"),
    "eu-west-1": ("EU (Ireland)", "IE"),
    "eu-west-2": ("EU (London)", "GB"),
    "eu-west-3": ("EU (Paris)", "FR"),
}


def digitalocean_location(slug: str) -> Location:
    name, country = DIGITALOCEAN_CITIES.get(slug[:3], (slug, None))
    return Location(id=slug, display_name=name, country_code=country)


def gcp_region_of_zone(zone: str) -> str:
    """'us-central1-b' -> 'us-central1'"""
    return zone.rsplit("-", 1)[0]


def gcp_location(zone: str) -> Location:
    name, country = GCP_REGIONS.get(gcp_region_of_zone(zone), (zone, None))
    return Location(id=zone, display_name=name, country_code=country)


def lightsail_location(region: str) -> Location:
    name, country = LIGHTSAIL_REGIONS.get(region, (region, None))
    return Location(id=region, display_name=name, country_code=country)
