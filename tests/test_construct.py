"""Synthesis tests for the ResourceInitializer construct and the demo stack."""
from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest

if shutil.which("node") is None:
    pytest.skip("Node.js is required to synthesize CDK apps", allow_module_level=True)

cdk = pytest.importorskip("aws_cdk")

from aws_cdk import Duration, Stack, Token  # noqa: E402
from aws_cdk import aws_ec2 as ec2  # noqa: E402
from aws_cdk import aws_logs as logs  # noqa: E402
from aws_cdk.assertions import Match, Template  # noqa: E402

from resource_initializer.construct import ResourceInitializer, ResourceInitializerProps  # noqa: E402
from resource_initializer.identity import (  # noqa: E402
    build_payload,
    identity_token,
    physical_resource_id,
)

FN_DIR = Path(__file__).resolve().parents[1] / "functions" / "rds_init"


def _write_fn_dir(root: Path, script: str) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    (root / "Dockerfile").write_text(
        "FROM public.ecr.aws/lambda/python:3.11\nCOPY script.sql ${LAMBDA_TASK_ROOT}/\n", encoding="utf-8"
    )
    (root / "script.sql").write_text(script, encoding="utf-8")
    return root


def _make(
    config=None,
    *,
    memory_size=None,
    code_dir=FN_DIR,
    log_retention=logs.RetentionDays.FIVE_MONTHS,
    one_per_az=None,
    extra_sg=False,
):
    app = cdk.App()
    stack = Stack(app, "TestStack")
    vpc = ec2.Vpc(stack, "Vpc", max_azs=2)
    security_groups = [ec2.SecurityGroup(stack, "ExtraSg", vpc=vpc)] if extra_sg else []
    initializer = ResourceInitializer(
        stack,
        "MyRdsInit",
        ResourceInitializerProps(
            vpc=vpc,
            subnets_selection=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS, one_per_az=one_per_az),
            fn_timeout=Duration.minutes(2),
            fn_code_dir=str(code_dir),
            fn_log_retention=log_retention,
            config=config if config is not None else {"credsSecretName": "x"},
            fn_security_groups=security_groups,
            fn_memory_size=memory_size,
        ),
    )
    return stack, initializer


class TestResourceInitializer:
    def test_function_is_deployed_with_defaults(self):
        stack, _ = _make()
        template = Template.from_stack(stack)

        template.has_resource_properties(
            "AWS::Lambda::Function",
            {
                "FunctionName": "MyRdsInitResourceInitializerFn",
                "MemorySize": 128,
                "Timeout": 120,
                "PackageType": "Image",
            },
        )
        template.has_resource_properties(
            "AWS::EC2::SecurityGroup",
            {"GroupName": "MyRdsInitResourceInitializerFnSg"},
        )

    def test_memory_size_override(self):
        stack, _ = _make(memory_size=512)
        Template.from_stack(stack).has_resource_properties(
            "AWS::Lambda::Function",
            {"FunctionName": "MyRdsInitResourceInitializerFn", "MemorySize": 512},
        )

    def test_memory_size_below_minimum_is_rejected(self):
        with pytest.raises(ValueError):
            _make(memory_size=64)

    def test_non_serializable_config_is_rejected(self):
        with pytest.raises(ValueError):
            _make(config={"bad": object()})

    def test_custom_resource_uses_identity_token(self):
        stack, initializer = _make()
        expected = identity_token(initializer.function_hash, build_payload({"credsSecretName": "x"}))
        assert initializer.identity_token == expected
        assert initializer.payload == build_payload({"credsSecretName": "x"})

        template = Template.from_stack(stack)
        template.resource_count_is("Custom::AWS", 1)
        assert physical_resource_id("MyRdsInit", expected) in json.dumps(template.to_json())

    def test_function_runs_the_hashed_image(self):
        stack, initializer = _make()
        template = json.dumps(Template.from_stack(stack).to_json())
        assert initializer.image.asset_hash in template

    def test_invoker_role_can_invoke_any_function(self):
        stack, _ = _make()
        Template.from_stack(stack).has_resource_properties(
            "AWS::IAM::Policy",
            {
                "PolicyDocument": {
                    "Statement": Match.array_with(
                        [
                            Match.object_like(
                                {"Action": "lambda:InvokeFunction", "Effect": "Allow", "Resource": "*"}
                            )
                        ]
                    )
                }
            },
        )

    def test_response_is_an_unresolved_token(self):
        _, initializer = _make()
        assert Token.is_unresolved(initializer.response)
        assert initializer.function is not None
        assert initializer.custom_resource is not None

    def test_same_inputs_give_same_token(self):
        _, a = _make()
        _, b = _make()
        assert a.identity_token == b.identity_token

    def test_config_change_gives_new_token(self):
        _, a = _make({"credsSecretName": "x"})
        _, b = _make({"credsSecretName": "y"})
        assert a.identity_token != b.identity_token

    def test_handler_change_gives_new_token(self, tmp_path):
        _, a = _make(code_dir=_write_fn_dir(tmp_path / "a", "SELECT 1;"))
        _, b = _make(code_dir=_write_fn_dir(tmp_path / "b", "DROP DATABASE main;"))
        assert a.image.asset_hash != b.image.asset_hash
        assert a.identity_token != b.identity_token

    def test_same_image_content_in_another_directory_gives_same_token(self, tmp_path):
        _, a = _make(code_dir=_write_fn_dir(tmp_path / "a", "SELECT 1;"))
        _, b = _make(code_dir=_write_fn_dir(tmp_path / "b", "SELECT 1;"))
        assert a.identity_token == b.identity_token

    def test_log_retention_change_gives_new_token(self):
        _, a = _make()
        _, b = _make(log_retention=logs.RetentionDays.ONE_WEEK)
        assert a.identity_token != b.identity_token

    def test_subnet_selection_change_gives_new_token(self):
        _, a = _make()
        _, b = _make(one_per_az=True)
        assert a.identity_token != b.identity_token

    def test_extra_security_group_gives_new_token(self):
        _, a = _make()
        _, b = _make(extra_sg=True)
        assert a.identity_token != b.identity_token

    def test_missing_code_dir_is_rejected(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            _make(code_dir=tmp_path / "nope")


class TestRdsInitStackExample:
    @pytest.fixture(scope="class")
    def template(self):
        from demos.rds_init_example import RdsInitStackExample

        stack = RdsInitStackExample(cdk.App(), "RdsInitExample")
        return Template.from_stack(stack)

    def test_mysql_instance(self, template):
        template.has_resource_properties(
            "AWS::RDS::DBInstance",
            {"Engine": "mysql", "DBInstanceIdentifier": "mysql-01", "DBName": "main"},
        )

    def test_secret_name_follows_stack_convention(self, template):
        template.has_resource_properties(
            "AWS::SecretsManager::Secret",
            {"Name": "/rdsinitexample/rds/creds/mysql-01"},
        )

    def test_initializer_can_reach_database(self, template):
        template.has_resource_properties(
            "AWS::EC2::SecurityGroupIngress",
            {"IpProtocol": "tcp", "FromPort": 3306, "ToPort": 3306},
        )

    def test_response_output(self, template):
        template.has_output("RdsInitFnResponse", {})

    def test_initializer_waits_for_database(self, template):
        resources = template.find_resources("Custom::AWS")
        assert len(resources) == 1
        (res,) = resources.values()
        depends_on = res.get("DependsOn") or []
        db = template.find_resources("AWS::RDS::DBInstance")
        assert any(logical_id in depends_on for logical_id in db)
