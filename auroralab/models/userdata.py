"""Bootstrap script for the load-test fleet."""

SHEBANG = "#!/bin/env bash"

# Builds sysbench from source and installs the MySQL 8 client on Amazon Linux 2.
LOAD_TEST_COMMANDS = (
    "yum update -y",
    "yum install -y jq git make automake libtool pkgconfig libaio-devel",
    "yum install -y mysql-devel openssl-devel",
    "yum install -y postgresql-devel",
    "cd /usr/local/src",
    "git clone https://github.com/akopytov/sysbench.git",
    "cd sysbench/",
    "./autogen.sh",
    "./configure",
    "make -j",
    "make install",
    "rpm --import https://repo.mysql.com/RPM-GPG-KEY-mysql-2022",
    "yum -y install https://dev.mysql.com/get/mysql80-community-release-el7-6.noarch.rpm",
    "yum install mysql -y",
    "sysbench --version",
)


def render_user_data(commands=LOAD_TEST_COMMANDS, shebang: str = SHEBANG) -> str:
    """Join commands into a Linux user-data script."""
    return "\n".join([shebang, *commands]) + "\n"
