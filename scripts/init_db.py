from db.session import engine, Base
from db.models import JOB_MODELS

def init_database():
    print(f"Creating database tables: {', '.join(m.__tablename__ for m in JOB_MODELS.values())}")
    Base.metadata.create_all(bind=engine)
    print("Database initialized successfully")

if __name__ == "__main__":
    init_database()
