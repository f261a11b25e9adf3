from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """Declarative base for loyalty models; defaults the table name to the class name."""

    @declared_attr.directive
    def __tablename__(cls) -> str:  # noqa: N805
        return cls.__name__.lower()


# Register every model on Base.metadata for create_all and Alembic autogenerate
import tillpoint_api.models  # noqa: E402,F401
