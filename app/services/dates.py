from datetime import datetime
from typing import Optional

from app.core.errors import ValidationError


def check_dates(due_date: datetime, close_date: datetime, publish_date: Optional[datetime] = None) -> None:
    if close_date < due_date:
        raise ValidationError("closeDate must be on or after dueDate")
    if publish_date is not None and publish_date >= due_date:
        raise ValidationError("publishDate must be before dueDate")
