from typing import TypedDict


class Migration(TypedDict):
    name: str
    sql: str
