"""Tests for boto3 resource discovery."""

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, ProfileNotFound

from awsrat.aws import AWSManager
from awsrat.errors import AWSCallError, PrerequisiteError

from tests.conftest import make_client

CLUSTER = "arn:aws:ecs:eu-west-1:123456789012:cluster/main"


def client_error(operation: str, code: str = "AccessDeniedException") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": "denied"}}, operation)


class TestAWSManagerInit:
    """Tests for session setup."""

    def test_binds_profile_and_region(self, boto_session) -> None:
        manager = AWSManager("dev", "us-west-2")
        boto_session.session_cls.assert_called_once_with(profile_name="dev", region_name="us-west-2")
        assert manager.profile == "dev"
        assert manager.region == "us-west-2"

    def test_falls_back_to_session_region(self, boto_session) -> None:
        assert AWSManager("dev").region == "eu-west-1"

    def test_unknown_profile(self) -> None:
        with patch("awsrat.aws.boto3.Session", side_effect=ProfileNotFound(profile="nope")):
            with pytest.raises(PrerequisiteError, match="nope"):
                AWSManager("nope")


class TestRegionsAndInstances:
    """Tests for EC2 lookups."""

    def test_regions_sorted(self, boto_session) -> None:
        ec2 = MagicMock()
        ec2.describe_regions.return_value = {
            "Regions": [{"RegionName": "us-east-1"}, {"RegionName": "eu-west-1"}]}
        boto_session.clients["ec2"] = ec2
        assert AWSManager().list_regions() == ["eu-west-1", "us-east-1"]

    def test_instances_with_names(self, boto_session) -> None:
        boto_session.clients["ec2"] = make_client({"describe_instances": [
            {"Reservations": [{"Instances": [
                {"InstanceId": "i-2", "Tags": [{"Key": "Name", "Value": "worker"}],
                 "State": {"Name": "running"}, "PrivateIpAddress": "10.0.0.2"},
                {"InstanceId": "i-1", "State": {"Name": "running"}},
            ]}]},
            {"Reservations": [{"Instances": [
                {"InstanceId": "i-3", "Tags": [{"Key": "Name", "Value": "Bastion"}],
                 "State": {"Name": "running"}},
            ]}]},
        ]})

        instances = AWSManager().list_instances()

        assert [i["Id"] for i in instances] == ["i-1", "i-3", "i-2"]
        assert instances[2] == {"Id": "i-2", "Name": "worker", "State": "running", "PrivateIp": "10.0.0.2"}

    def test_only_running_instances_requested(self, boto_session) -> None:
        seen = {}

        def pages(**kwargs):
            seen.update(kwargs)
            return []

        boto_session.clients["ec2"] = make_client({"describe_instances": pages})
        assert AWSManager().list_instances() == []
        assert seen["Filters"] == [{"Name": "instance-state-name", "Values": ["running"]}]

    def test_client_error(self, boto_session) -> None:
        ec2 = MagicMock()
        ec2.get_paginator.return_value.paginate.side_effect = client_error("DescribeInstances")
        boto_session.clients["ec2"] = ec2
        with pytest.raises(AWSCallError, match="ec2:DescribeInstances"):
            AWSManager().list_instances()


class TestLoadBalancersAndDatabases:
    """Tests for ELB and RDS lookups."""

    def test_load_balancers(self, boto_session) -> None:
        boto_session.clients["elbv2"] = make_client({"describe_load_balancers": [
            {"LoadBalancers": [{
                "LoadBalancerName": "web", "DNSName": "web.elb.amazonaws.com",
                "LoadBalancerArn": "arn:lb/web", "Type": "application", "Scheme": "internal",
            }]},
        ]})
        lbs = AWSManager().list_load_balancers()
        assert lbs == [{"Name": "web", "DNSName": "web.elb.amazonaws.com", "Arn": "arn:lb/web",
                        "Type": "application", "Scheme": "internal"}]

    def test_listener_ports_unique_sorted(self, boto_session) -> None:
        boto_session.clients["elbv2"] = make_client({"describe_listeners": [
            {"Listeners": [{"Port": 443}, {"Port": 80}]},
            {"Listeners": [{"Port": 443}]},
        ]})
        assert AWSManager().list_listener_ports("arn:lb/web") == [80, 443]

    def test_databases_skip_missing_endpoint(self, boto_session) -> None:
        boto_session.clients["rds"] = make_client({"describe_db_instances": [
            {"DBInstances": [
                {"DBInstanceIdentifier": "orders", "Engine": "postgres", "DBInstanceStatus": "available",
                 "Endpoint": {"Address": "orders.rds.amazonaws.com", "Port": 5432}},
                {"DBInstanceIdentifier": "new", "Engine": "mysql", "DBInstanceStatus": "creating"},
            ]},
        ]})
        dbs = AWSManager().list_db_instances()
        assert dbs == [{"Id": "orders", "Endpoint": "orders.rds.amazonaws.com", "Port": 5432,
                        "Engine": "postgres", "Status": "available"}]


class TestEcs:
    """Tests for ECS lookups and service updates."""

    def test_services_across_clusters(self, boto_session) -> None:
        boto_session.clients["ecs"] = make_client({
            "list_clusters": [{"clusterArns": [CLUSTER]}],
            "list_services": [{"serviceArns": [
                "arn:aws:ecs:eu-west-1:123456789012:service/main/web"]}],
        })
        services = AWSManager().list_services()
        assert services == [{
            "Cluster": CLUSTER, "ClusterName": "main", "Service": "web",
            "Arn": "arn:aws:ecs:eu-west-1:123456789012:service/main/web",
        }]

    def test_containers_on_container_instances(self, boto_session) -> None:
        ecs = make_client({
            "list_clusters": [{"clusterArns": [CLUSTER]}],
            "list_container_instances": [{"containerInstanceArns": ["arn:ci/1"]}],
            "list_tasks": [{"taskArns": ["arn:task/1"]}],
        })
        ecs.describe_container_instances.return_value = {"containerInstances": [
            {"containerInstanceArn": "arn:ci/1", "ec2InstanceId": "i-0456"}]}
        ecs.describe_tasks.return_value = {"tasks": [{
            "group": "service:web",
            "containers": [
                {"name": "app", "runtimeId": "abc123"},
                {"name": "sidecar"},
            ],
        }]}
        boto_session.clients["ecs"] = ecs

        containers = AWSManager().list_containers()

        assert containers == [{
            "Service": "web", "Container": "app", "InstanceId": "i-0456",
            "RuntimeId": "abc123", "Cluster": CLUSTER,
        }]
        ecs.describe_tasks.assert_called_once_with(cluster=CLUSTER, tasks=["arn:task/1"])

    def test_cluster_without_container_instances(self, boto_session) -> None:
        ecs = make_client({
            "list_clusters": [{"clusterArns": [CLUSTER]}],
            "list_container_instances": [{"containerInstanceArns": []}],
        })
        boto_session.clients["ecs"] = ecs
        assert AWSManager().list_containers() == []
        ecs.describe_container_instances.assert_not_called()

    def test_force_new_deployment(self, boto_session) -> None:
        ecs = MagicMock()
        ecs.update_service.return_value = {"service": {"serviceName": "web"}}
        boto_session.clients["ecs"] = ecs
        assert AWSManager().force_new_deployment(CLUSTER, "web") == {"serviceName": "web"}
        ecs.update_service.assert_called_once_with(cluster=CLUSTER, service="web", forceNewDeployment=True)

    def test_service_status_trims_events(self, boto_session) -> None:
        ecs = MagicMock()
        ecs.describe_services.return_value = {"services": [{
            "deployments": [{"status": "PRIMARY", "rolloutState": "IN_PROGRESS"}],
            "events": [{"createdAt": datetime(2026, 1, 1), "message": f"event {n}"} for n in range(10)],
        }]}
        boto_session.clients["ecs"] = ecs
        status = AWSManager().service_status(CLUSTER, "web")
        assert len(status["events"]) == 3
        assert status["events"][0]["message"] == "event 0"

    def test_service_status_missing_service(self, boto_session) -> None:
        ecs = MagicMock()
        ecs.describe_services.return_value = {"services": [], "failures": [{"reason": "MISSING"}]}
        boto_session.clients["ecs"] = ecs
        with pytest.raises(AWSCallError, match="MISSING"):
            AWSManager().service_status(CLUSTER, "web")


class TestLogs:
    """Tests for CloudWatch Logs lookups."""

    def test_log_groups(self, boto_session) -> None:
        boto_session.clients["logs"] = make_client({"describe_log_groups": [
            {"logGroups": [{"logGroupName": "/ecs/web"}]},
            {"logGroups": [{"logGroupName": "/aws/lambda/job"}]},
        ]})
        assert AWSManager().list_log_groups() == ["/ecs/web", "/aws/lambda/job"]

    def test_filter_log_events(self, boto_session) -> None:
        logs = MagicMock()
        logs.filter_log_events.return_value = {"events": [
            {"timestamp": 1, "message": "ERROR boom", "logStreamName": "s1", "eventId": "x"}]}
        boto_session.clients["logs"] = logs

        events = AWSManager().filter_log_events("/ecs/web", filter_pattern="ERROR", start_time=1000)

        logs.filter_log_events.assert_called_once_with(
            logGroupName="/ecs/web", limit=100, filterPattern="ERROR", startTime=1000)
        assert events == [{"timestamp": 1, "message": "ERROR boom", "logStreamName": "s1"}]

    def test_filter_log_events_follows_empty_pages(self, boto_session) -> None:
        logs = MagicMock()
        logs.filter_log_events.side_effect = [
            {"events": [], "nextToken": "t1"},
            {"events": [{"timestamp": 1, "message": "ERROR a", "logStreamName": "s1"}], "nextToken": "t2"},
            {"events": [{"timestamp": 2, "message": "ERROR b", "logStreamName": "s2"}]},
        ]
        boto_session.clients["logs"] = logs

        events = AWSManager().filter_log_events("/ecs/web", filter_pattern="ERROR")

        assert [e["message"] for e in events] == ["ERROR a", "ERROR b"]
        calls = logs.filter_log_events.call_args_list
        assert "nextToken" not in calls[0].kwargs
        assert calls[1].kwargs["nextToken"] == "t1"
        assert calls[2].kwargs["nextToken"] == "t2"
        assert calls[2].kwargs["limit"] == 99

    def test_filter_log_events_stops_at_limit(self, boto_session) -> None:
        logs = MagicMock()
        logs.filter_log_events.return_value = {
            "events": [{"timestamp": n, "message": f"m{n}"} for n in range(3)],
            "nextToken": "more",
        }
        boto_session.clients["logs"] = logs

        events = AWSManager().filter_log_events("/ecs/web", limit=2)

        assert [e["timestamp"] for e in events] == [0, 1]
        logs.filter_log_events.assert_called_once()
