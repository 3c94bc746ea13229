from bulk_data.models.data_row import DataRow

__all__ = ["DataRow"]
