# Utility to init database roles/permissions and admin
from app.db import engine, Base, SessionLocal
from app.bootstrap_admin import seed_roles_and_permissions, create_first_admin


def init_roles_and_admin():
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_roles_and_permissions(db)
        admin_user = create_first_admin(db)
        if admin_user:
            print(f'Admin created: {admin_user.username}')
            print('Please change the password after first login!')
        else:
            print('Admin already exists')
    except Exception as e:
        print(f'Error during init: {e}')
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == '__main__':
    init_roles_and_admin()
