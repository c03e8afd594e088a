from __future__ import annotations

from pathlib import Path

from aws_cdk import CfnOutput, Duration, Stack, Token
from aws_cdk import aws_ec2 as ec2
from aws_cdk import aws_logs as logs
from aws_cdk import aws_rds as rds
from constructs import Construct

from resource_initializer.construct import ResourceInitializer, ResourceInitializerProps

FN_CODE_DIR = Path(__file__).resolve().parents[1] / "functions" / "rds_init"
MYSQL_PORT = 3306


class RdsInitStackExample(Stack):
    """MySQL instance in an isolated subnet, initialized by ``functions/rds_init``."""

    def __init__(self, scope: Construct, id: str, **kwargs) -> None:
        super().__init__(scope, id, **kwargs)

        instance_identifier = "mysql-01"
        creds_secret_name = f"/{id}/rds/creds/{instance_identifier}".lower()
        creds = rds.DatabaseSecret(
            self,
            "MysqlRdsCredentials",
            secret_name=creds_secret_name,
            username="admin",
        )

        vpc = ec2.Vpc(
            self,
            "MyVPC",
            subnet_configuration=[
                ec2.SubnetConfiguration(cidr_mask=24, name="ingress", subnet_type=ec2.SubnetType.PUBLIC),
                ec2.SubnetConfiguration(cidr_mask=24, name="compute", subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
                ec2.SubnetConfiguration(cidr_mask=28, name="rds", subnet_type=ec2.SubnetType.PRIVATE_ISOLATED),
            ],
        )

        db_server = rds.DatabaseInstance(
            self,
            "MysqlRdsInstance",
            vpc_subnets=ec2.SubnetSelection(one_per_az=True, subnet_type=ec2.SubnetType.PRIVATE_ISOLATED),
            credentials=rds.Credentials.from_secret(creds),
            vpc=vpc,
            port=MYSQL_PORT,
            database_name="main",
            allocated_storage=20,
            instance_identifier=instance_identifier,
            engine=rds.DatabaseInstanceEngine.mysql(version=rds.MysqlEngineVersion.VER_8_0),
            instance_type=ec2.InstanceType.of(ec2.InstanceClass.T3, ec2.InstanceSize.LARGE),
        )

        initializer = ResourceInitializer(
            self,
            "MyRdsInit",
            ResourceInitializerProps(
                config={"credsSecretName": creds_secret_name},
                fn_log_retention=logs.RetentionDays.FIVE_MONTHS,
                fn_code_dir=str(FN_CODE_DIR),
                fn_timeout=Duration.minutes(2),
                fn_security_groups=[],
                vpc=vpc,
                subnets_selection=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            ),
        )
        # The instance must exist before the initializer runs.
        initializer.custom_resource.node.add_dependency(db_server)

        db_server.connections.allow_from(initializer.function, ec2.Port.tcp(MYSQL_PORT))
        creds.grant_read(initializer.function)

        CfnOutput(self, "RdsInitFnResponse", value=Token.as_string(initializer.response))

        self.initializer = initializer
