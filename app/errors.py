from typing import Optional


class ComparisonError(Exception):
    """Base error for a comparison run that cannot produce a result."""

    title = 'Comparison failed'

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details or message

    def to_dict(self):
        return {'error': self.title, 'details': self.details}


class InputError(ComparisonError):
    """User-correctable problem with the uploaded files or form fields."""

    title = 'Invalid input'


class MissingColumnError(InputError):
    title = 'Column not found'


class ExtractionError(InputError):
    title = 'No JSON files found'


class ParseError(ComparisonError):
    title = 'File parsing error'
