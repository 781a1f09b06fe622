"""Hello World — the simplest possible Tessera pipeline.

    tessera make examples/hello_pipeline.py
    tessera read examples/hello_pipeline.py graded
"""

from tessera import target


def grade(score):
    return "A" if score >= 90 else "B"


target("scores", """
[
    {"id": 1, "name": "Alice", "score": 95},
    {"id": 2, "name": "Bob", "score": 87},
    {"id": 3, "name": "Charlie", "score": 92},
]
""")

# Rebuilt whenever scores or grade() change
target("graded", "[{**r, 'name': r['name'].upper(), 'grade': grade(r['score'])} for r in scores]")

target("summary", """
counts = {}
for row in graded:
    counts[row["grade"]] = counts.get(row["grade"], 0) + 1
counts
""", format="json")
