"""Dynamic branching — one branch per slice of upstream data.

Demonstrates:
- map() pairing slices of two targets
- cross() over every combination
- group iteration with group_by()
- downstream targets reading the recombined value

    tessera make examples/branching_pipeline.py
    tessera branches fits
    tessera read examples/branching_pipeline.py fits --branch 0
"""

from tessera import Pipeline, Target, group_by, head

SEED_SALES = [
    {"region": "east", "units": 12},
    {"region": "west", "units": 7},
    {"region": "east", "units": 3},
    {"region": "north", "units": 9},
]


def fit(rate, window):
    return round(rate * window / (1 + window), 3)


pipeline = Pipeline([
    # ─── Inputs ───
    Target("rates", "[0.1, 0.2, 0.4]"),
    Target("windows", "[3, 7, 14]"),
    Target("labels", "['slow', 'medium', 'fast']", iteration="list"),

    # ─── Branches ───
    Target("named", "{'label': labels, 'rate': rates[0]}", pattern="map(rates, labels)", iteration="list"),
    Target("fits", "[{'rate': rates[0], 'window': windows[0], 'fit': fit(rates[0], windows[0])}]",
           pattern="cross(rates, windows)"),
    Target("preview", "fits[0]['fit']", pattern=head("fits", 2)),

    # ─── Grouped data ───
    Target("sales", "group_by(SEED_SALES, 'region')", iteration="group"),
    Target("region_totals", "[{'region': sales[0]['region'], 'units': sum(r['units'] for r in sales)}]",
           pattern="sales"),

    # ─── Aggregates ───
    Target("best_fit", "max(fits, key=lambda row: row['fit'])"),
    Target("report", """
{
    "best": best_fit,
    "regions": {row["region"]: row["units"] for row in region_totals},
    "named": [n["label"] for n in named],
    "preview": preview,
}
""", format="json"),
])
