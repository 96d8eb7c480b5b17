from difybatch.db import crud
from difybatch.db.session import get_db


def complete_setting_id(value: str):
    with get_db() as db:
        for setting in crud.get_settings(db=db):
            if setting.id.startswith(value):
                yield setting.id


def complete_failed_message_id(value: str):
    with get_db() as db:
        for failed_message in crud.get_unretried_failed_messages(db=db, limit=20):
            if failed_message.id.startswith(value):
                yield failed_message.id
