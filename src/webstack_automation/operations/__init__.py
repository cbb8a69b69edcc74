from .base import Operation
from .file import FileOperation
from .firewall import UfwOperation
from .git import GitOperation
from .mysql import MysqlDatabaseOperation, MysqlUserOperation
from .package import PackageOperation
from .service import ServiceOperation

OPERATION_REGISTRY = {
    "package": PackageOperation,
    "service": ServiceOperation,
    "file": FileOperation,
    "git": GitOperation,
    "mysql_user": MysqlUserOperation,
    "mysql_db": MysqlDatabaseOperation,
    "ufw": UfwOperation,
}

__all__ = [
    "Operation",
    "FileOperation",
    "GitOperation",
    "MysqlDatabaseOperation",
    "MysqlUserOperation",
    "PackageOperation",
    "ServiceOperation",
    "UfwOperation",
    "OPERATION_REGISTRY",
]
