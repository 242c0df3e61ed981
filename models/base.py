from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


# Database setup helper
def init_db(db_url=None):
    from engine.settings import settings

    # Register every mapped table on Base before create_all.
    import models.trust_graph  # noqa: F401
    import models.referral_chain  # noqa: F401
    import api.audit_log  # noqa: F401

    engine = create_engine(db_url or settings.DB_URL)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)
